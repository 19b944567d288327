"""
Error taxonomy for the health event stream.

Nothing here is fatal to the process: every failure is scoped either to a single
subscription's tick or to rejecting a single subscribe request.
"""


class HealthStreamError(Exception):
    """Base class for all errors raised by the streaming engine."""


class InvalidCadence(HealthStreamError, ValueError):
    """Subscribe-time validation failure; the request is rejected immediately."""

    def __init__(self, cadence_ms: int, minimum_ms: int) -> None:
        super().__init__(f"cadence {cadence_ms}ms is below the minimum of {minimum_ms}ms")
        self.cadence_ms = cadence_ms
        self.minimum_ms = minimum_ms


class SnapshotQueryFailure(HealthStreamError):
    """Transient snapshot store failure; the affected step produces no event."""

    def __init__(self, query: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(f"snapshot query '{query}' failed{detail}")
        self.query = query
        self.cause = cause


class InsightGenerationFailure(HealthStreamError):
    """Generative-text collaborator failed; callers substitute fallback text."""


class TransportWriteFailure(HealthStreamError):
    """Writing a batch to a subscriber's transport failed; triggers unsubscribe."""

    def __init__(self, subscription_id: str, transport_name: str) -> None:
        super().__init__(f"write to transport '{transport_name}' failed for {subscription_id}")
        self.subscription_id = subscription_id
        self.transport_name = transport_name


class SubscriptionNotFound(HealthStreamError):
    """Unknown subscription id. Logged only; unsubscribing an unknown id is a no-op."""


class UnknownUser(HealthStreamError, LookupError):
    """A write or lookup referenced an owner the store does not know."""

    def __init__(self, owner_id: str) -> None:
        super().__init__(f"unknown user '{owner_id}'")
        self.owner_id = owner_id
