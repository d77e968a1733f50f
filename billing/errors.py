class BillingError(Exception):
    pass


class ValidationError(BillingError):
    pass


class NotFound(BillingError):
    pass


class InsufficientCredits(BillingError):
    def __init__(self, user_id: int, requested: int, available: int):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"User {user_id} has {available} credits, {requested} required"
        )


class NoUserMapped(BillingError):
    pass


class LedgerContention(BillingError):
    """Raised when a ledger append keeps losing the per-user sequence race.

    This is a transient store condition, not a balance problem; callers may
    retry the whole request.
    """


class UnparseableWebhookPayload(BillingError):
    """A known event type arrived without a field needed to act on it."""

    def __init__(self, event_type: str, detail: str):
        self.event_type = event_type
        self.detail = detail
        super().__init__(f"{event_type}: {detail}")


class PermissionDenied(BillingError):
    pass


class PaymentsNotConfigured(BillingError):
    pass


class CheckoutFailed(BillingError):
    pass
