from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from clinic_billing.core.config import settings


def utcnow_naive() -> datetime:
    # DB columns are naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_local() -> datetime:
    tz = ZoneInfo(getattr(settings, "TIMEZONE", "Africa/Dar_es_Salaam"))
    return datetime.now(timezone.utc).astimezone(tz)
