"""Exception types raised for unexpected faults; expected business outcomes are returned as results."""


class SubscriptionEngineError(Exception):
    """Base exception."""


class RecordNotFoundError(SubscriptionEngineError):
    """Account or subscription record is missing."""


class InvalidTransitionError(SubscriptionEngineError):
    """Requested status change is not in the allowed transition table."""

    def __init__(self, current: str | None, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Transition {current!r} -> {target!r} is not allowed")


class AtomicUpdateError(SubscriptionEngineError):
    """Grouped account/subscription write did not apply."""

    def __init__(self, user_id: str, operation: str, message: str) -> None:
        self.user_id = user_id
        self.operation = operation
        super().__init__(f"Atomic subscription update failed ({operation}) for user {user_id}: {message}")


class ConcurrentUpdateError(AtomicUpdateError):
    """Record version changed between read and write; the caller may retry."""


class GatewayError(SubscriptionEngineError):
    """Payment gateway call failed or returned an unusable response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class GatewayTimeoutError(GatewayError):
    """Payment gateway did not answer within the configured timeout."""
