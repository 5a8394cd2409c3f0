import os

# keep the module-level engine off MySQL while tests import the package
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from itertools import count  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

import clinic_billing.models  # noqa: E402,F401
from clinic_billing.db.base import Base  # noqa: E402
from clinic_billing.db.session import make_engine  # noqa: E402
from clinic_billing.models import (  # noqa: E402
    InsuranceCoverageRule,
    InsuranceProvider,
    OrderStatus,
    Patient,
    Visit,
    VisitLabOrder,
    VisitPrescription,
    VisitRadiologyOrder,
    VisitStatus,
)
from clinic_billing.services.billing_ports import (  # noqa: E402
    GatewayResult,
    Notifier,
    PaymentGateway,
)

_seq = count(1)


class RecordingNotifier(Notifier):

    def __init__(self):
        self.sent = []

    def emit(self, **kw):
        self.sent.append(kw)


class FailingNotifier(Notifier):

    def emit(self, **kw):
        raise RuntimeError("smtp down")


class FakeGateway(PaymentGateway):
    name = "fake"

    def __init__(self, *, charge_ok=True, refund_ok=True, raise_on_charge=False):
        super().__init__(timeout=1)
        self.charge_ok = charge_ok
        self.refund_ok = refund_ok
        self.raise_on_charge = raise_on_charge
        self.charges = []
        self.refunds = []

    def _charge(self, prefix, amount):
        if self.raise_on_charge:
            raise TimeoutError("gateway timed out")
        self.charges.append(amount)
        if not self.charge_ok:
            return GatewayResult(False, None, "Card declined")
        return GatewayResult(True, f"{prefix}-{len(self.charges)}")

    def charge_card(self, *, amount, reference, details):
        return self._charge("TXN", amount)

    def charge_online(self, *, amount, reference, details):
        return self._charge("ONL", amount)

    def refund(self, *, gateway, transaction_id, amount):
        self.refunds.append((transaction_id, amount))
        if not self.refund_ok:
            return GatewayResult(False, None, "Refund rejected")
        return GatewayResult(True, f"REF-{len(self.refunds)}")


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False,
                        autoflush=False,
                        bind=engine,
                        future=True)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_provider(db):

    def _make(name="NHIF", *, auto_coverage_percent=None, api_enabled=False,
              rules=()):
        p = InsuranceProvider(
            name=name,
            code=f"{name[:8].upper()}-{next(_seq)}",
            is_active=True,
            api_enabled=api_enabled,
            api_endpoint="https://claims.example.test" if api_enabled else None,
            auto_coverage_percent=auto_coverage_percent,
        )
        for plan_code, item_type, pct in rules:
            p.coverage_rules.append(
                InsuranceCoverageRule(plan_code=plan_code,
                                      item_type=item_type,
                                      coverage_percent=Decimal(str(pct))))
        db.add(p)
        db.commit()
        return p

    return _make


@pytest.fixture
def make_patient(db):

    def _make(first_name="Amina", *, provider=None, provider_name=None,
              membership_number=None, plan_code=None):
        p = Patient(
            patient_number=f"P-{next(_seq):05d}",
            first_name=first_name,
            last_name="Mushi",
            insurance_provider_id=provider.id if provider else None,
            insurance_provider_name=provider_name,
            membership_number=membership_number,
            insurance_plan_code=plan_code,
        )
        db.add(p)
        db.commit()
        return p

    return _make


@pytest.fixture
def make_visit(db):

    def _make(patient, *, status=VisitStatus.PENDING_PAYMENT, fee_paid=False):
        v = Visit(
            visit_number=f"VIS-T-{next(_seq):05d}",
            patient_id=patient.id,
            status=status,
            consultation_fee_paid=fee_paid,
            is_active=True,
        )
        db.add(v)
        db.commit()
        return v

    return _make


@pytest.fixture
def add_order(db):
    base = datetime(2024, 1, 1, 8, 0, 0)

    def _add(visit, kind="lab", *, status=OrderStatus.PENDING_PAYMENT,
             minutes=0, name="CBC", price="20000"):
        created = base + timedelta(minutes=minutes)
        if kind == "lab":
            o = VisitLabOrder(visit_id=visit.id, test_name=name, status=status,
                              created_at=created)
        elif kind == "radiology":
            o = VisitRadiologyOrder(visit_id=visit.id, scan_type=name,
                                    body_part="Chest", status=status,
                                    created_at=created)
        else:
            o = VisitPrescription(visit_id=visit.id, medication=name,
                                  dosage="500mg", frequency="TDS",
                                  status=status, created_at=created)
        o.price = Decimal(price)
        db.add(o)
        db.commit()
        return o

    return _add


def item(item_type, price, description=None, **kw):
    data = {
        "item_type": item_type,
        "description": description or f"{item_type} charge",
        "unit_price": Decimal(str(price)),
    }
    data.update(kw)
    return data
