"""Error taxonomy for checkout and settlement."""

from typing import Dict, Optional


class SettlementError(Exception):
    """Base error with a message and the HTTP status it maps to."""

    code = "settlement_error"

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ConfigurationError(SettlementError):
    code = "configuration_error"

    def __init__(self, message: str):
        super().__init__(message, 500)


class GatewayError(SettlementError):
    code = "gateway_error"

    def __init__(self, message: str):
        super().__init__(message, 502)


class InvalidSignature(SettlementError):
    code = "invalid_signature"

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, 401)


class PaymentNotSuccessful(SettlementError):
    code = "payment_not_successful"

    def __init__(self, reference: str, status: str):
        self.reference = reference
        self.status = status
        super().__init__(
            f"payment {reference} is not successful (status={status})", 400
        )


class ReservationNotFound(SettlementError):
    code = "reservation_not_found"

    def __init__(self, message: str):
        super().__init__(message, 404)


class InvalidReservation(SettlementError):
    code = "invalid_reservation"

    def __init__(self, message: str):
        super().__init__(message, 400)


class InventoryExhausted(SettlementError):
    code = "inventory_exhausted"

    def __init__(self, table: str, row_id: str, requested: int):
        self.table = table
        self.row_id = row_id
        self.requested = requested
        super().__init__(
            f"not enough inventory in {table} {row_id} for {requested}", 409
        )


class InventoryContention(SettlementError):
    code = "inventory_contention"

    def __init__(self, table: str, row_id: str):
        super().__init__(
            f"gave up incrementing {table} {row_id} after repeated conflicts",
            409,
        )


class NotificationFailure(SettlementError):
    code = "notification_failure"

    def __init__(self, message: str):
        super().__init__(message, 502)


class PartialSettlementFailure(SettlementError):
    """Some reservations of a paid reference could not be issued.

    Carries the settlement result so callers can see what did succeed.
    Re-invoking settlement for the same reference is safe.
    """

    code = "partial_settlement_failure"

    def __init__(self, result, failures: Optional[Dict[str, str]] = None):
        self.result = result
        self.failures = dict(failures or {})
        names = ", ".join(sorted(self.failures)) or "?"
        super().__init__(
            f"settlement of {result.reference} incomplete; "
            f"failed reservations: {names}",
            500,
        )
