"""Exceptions raised by the assignment engine."""


class DeskrouteError(Exception):
    """Base exception for assignment engine operations."""


class ConfigurationError(DeskrouteError):
    """Malformed rule or SLA policy."""


class AssignmentConflict(DeskrouteError):
    """The ticket's assignment state changed under us; safe to retry on fresh state."""

    def __init__(self, ticket_id: str, message: str = "assignment state changed concurrently"):
        super().__init__(f"{ticket_id}: {message}")
        self.ticket_id = ticket_id


class ProviderUnavailable(DeskrouteError):
    """An external read (agent directory, metrics) failed or timed out."""

    def __init__(self, component: str, cause: Exception | None = None):
        super().__init__(f"{component} unavailable: {cause}")
        self.component = component
        self.cause = cause


class TicketNotFound(DeskrouteError):
    pass


class AgentNotFound(DeskrouteError):
    pass


class RebalanceInProgress(DeskrouteError):
    """Another rebalance run holds the lock."""
