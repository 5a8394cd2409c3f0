# FILE: clinic_billing/services/billing_ports.py
"""
External capabilities the billing core calls out to.

Gateways and claim submission are opaque: they either return a result or
raise. Notification delivery is best-effort by contract.
"""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session, sessionmaker

from clinic_billing.core.config import settings
from clinic_billing.models.audit import Notification

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    success: bool
    transaction_id: Optional[str] = None
    message: Optional[str] = None


class PaymentGateway:
    """Card / online charge + refund. Subclasses talk to a real processor."""

    name = "gateway"

    def __init__(self, timeout: Optional[float] = None):
        # processors must give up after this many seconds and raise
        self.timeout = timeout or settings.BILLING_GATEWAY_TIMEOUT_SECONDS

    def charge_card(self, *, amount: Decimal, reference: str,
                    details: Dict[str, Any]) -> GatewayResult:
        raise NotImplementedError

    def charge_online(self, *, amount: Decimal, reference: str,
                      details: Dict[str, Any]) -> GatewayResult:
        raise NotImplementedError

    def refund(self, *, gateway: str, transaction_id: str,
               amount: Decimal) -> GatewayResult:
        raise NotImplementedError


def _txn(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


class SimulatedGateway(PaymentGateway):
    """Always approves. Used until a processor is wired in."""

    name = "simulated"

    def charge_card(self, *, amount, reference, details) -> GatewayResult:
        logger.info("Simulated card charge amount=%s ref=%s", amount, reference)
        return GatewayResult(True, _txn("TXN"))

    def charge_online(self, *, amount, reference, details) -> GatewayResult:
        logger.info("Simulated online charge amount=%s ref=%s", amount,
                    reference)
        return GatewayResult(True, _txn("ONL"))

    def refund(self, *, gateway, transaction_id, amount) -> GatewayResult:
        logger.info("Simulated refund gateway=%s txn=%s amount=%s", gateway,
                    transaction_id, amount)
        return GatewayResult(True, _txn("REF"))


class ClaimSubmitter:

    def submit_electronic_claim(self, invoice, provider) -> None:
        raise NotImplementedError


class LoggingClaimSubmitter(ClaimSubmitter):

    def submit_electronic_claim(self, invoice, provider) -> None:
        cov = invoice.insurance_coverage
        logger.info(
            "Electronic claim forwarded provider=%s endpoint=%s claim=%s amount=%s",
            provider.name,
            provider.api_endpoint,
            cov.claim_number if cov else None,
            cov.coverage_amount if cov else None,
        )


class Notifier:

    def emit(self, *, patient_id: Optional[int], kind: str, title: str,
             message: str, priority: str = "normal",
             entity_type: Optional[str] = None,
             entity_id: Optional[str] = None) -> None:
        raise NotImplementedError


class DbNotifier(Notifier):
    """
    Writes `notifications` rows in its own session/transaction so a failed
    notification never touches the caller's billing transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def bound_to(cls, db: Session) -> "DbNotifier":
        return cls(sessionmaker(bind=db.get_bind(), future=True))

    def emit(self, *, patient_id, kind, title, message, priority="normal",
             entity_type=None, entity_id=None) -> None:
        s = self.session_factory()
        try:
            s.add(
                Notification(
                    recipient_patient_id=patient_id,
                    kind=kind,
                    priority=priority,
                    title=title[:191],
                    message=message,
                    entity_type=entity_type,
                    entity_id=str(entity_id) if entity_id is not None else None,
                ))
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()


def default_gateway() -> PaymentGateway:
    return SimulatedGateway()


def default_claim_submitter() -> ClaimSubmitter:
    return LoggingClaimSubmitter()


def currency(amount) -> str:
    return f"{settings.BILLING_CURRENCY} {Decimal(str(amount or 0)):,.2f}"
