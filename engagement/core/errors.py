class EngagementError(Exception):
    """Base class for lifecycle engine errors."""


class ValidationError(EngagementError):
    """Trigger is not defined for the user's current state (absorbed, never surfaced)."""


class ConflictError(EngagementError):
    """A concurrent write committed first and the transition could not be re-applied."""

    def __init__(self, user_id: str, trigger: str, detail: str = ""):
        self.user_id = user_id
        self.trigger = trigger
        self.detail = detail
        super().__init__(f"conflict for user {user_id} on {trigger}: {detail or 'concurrent write'}")


class TransportError(EngagementError):
    """Outbound delivery failed."""


class FatalError(EngagementError):
    """The state store is unreachable; a batch run cannot start."""
