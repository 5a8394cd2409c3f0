# clinic_billing/core/config.py
import os
from decimal import Decimal
from typing import List, Optional
from urllib.parse import quote_plus

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Clinic Billing Core")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- MySQL ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "clinic_user")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "clinic_billing")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # Full URL wins over the MySQL parts (sqlite for local runs / tests)
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL") or None
    SQL_ECHO: bool = _flag("SQL_ECHO")

    # Hospital timezone: invoice number periods (INV-YYYYMM-NNNNN) follow it
    TIMEZONE: str = os.getenv("TIMEZONE", "Africa/Dar_es_Salaam")

    # ---------- Billing policy ----------
    BILLING_CURRENCY: str = os.getenv("BILLING_CURRENCY", "Tsh.")
    # Auto-coverage applied to insured patients when neither the provider
    # nor one of its plan rules says otherwise.
    BILLING_INSURANCE_COVERAGE_PERCENT: Decimal = Decimal(
        os.getenv("BILLING_INSURANCE_COVERAGE_PERCENT", "100") or "100")
    BILLING_OPTIMISTIC_RETRIES: int = int(
        os.getenv("BILLING_OPTIMISTIC_RETRIES", "3"))
    BILLING_GATEWAY_TIMEOUT_SECONDS: float = float(
        os.getenv("BILLING_GATEWAY_TIMEOUT_SECONDS", "15") or 15.0)
    BILLING_STATEMENT_DEFAULT_DAYS: int = int(
        os.getenv("BILLING_STATEMENT_DEFAULT_DAYS", "30"))

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"mysql+{self.DB_DRIVER}://{quote_plus(self.MYSQL_USER)}:{quote_plus(self.MYSQL_PASSWORD)}"
            f"@{self.MYSQL_HOST}:{self.MYSQL_PORT}/{self.MYSQL_DB}?charset=utf8mb4")


settings = Settings()
