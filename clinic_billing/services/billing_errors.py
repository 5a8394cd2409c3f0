# FILE: clinic_billing/services/billing_errors.py
from __future__ import annotations

from typing import List, Optional


# ============================================================
# Errors
# ============================================================
class BillingError(RuntimeError):
    """Base for every typed failure raised by the billing core."""
    status_code = 400

    def __init__(self, msg: str = ""):
        super().__init__(msg)
        self.msg = msg or self.__class__.__name__


class NotFoundError(BillingError):
    status_code = 404


class ValidationError(BillingError):
    status_code = 422


class ProviderNotFoundError(NotFoundError):

    def __init__(self,
                 provider_name: str,
                 known_providers: Optional[List[str]] = None):
        self.provider_name = provider_name
        self.known_providers = list(known_providers or [])
        known = ", ".join(self.known_providers) or "none"
        super().__init__(f"Insurance provider '{provider_name}' not found. "
                         f"Available providers: {known}")


class OverpaymentError(BillingError):
    status_code = 400


class InvalidStateError(BillingError):
    status_code = 409


class GatewayError(BillingError):
    status_code = 502


class ConcurrencyError(BillingError):
    """Optimistic-lock retries exhausted."""
    status_code = 409
