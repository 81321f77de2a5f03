"""Invoice processing states and the transitions between them.

    pending ──analyze ok──▶ processed ──validate──▶ validated ──export──▶ validated
       │                       │  ▲
       └────analyze failed─────┴──┴──▶ error ──analyze ok──▶ processed

Analysis is allowed from every state except validated. Deletion is not a
transition and is allowed in any state.
"""

from enum import Enum

from invoicehub.shared.errors import InvalidTransitionError


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"
    VALIDATED = "validated"


class LifecycleEvent(str, Enum):
    ANALYZE_SUCCEEDED = "analyze_succeeded"
    ANALYZE_FAILED = "analyze_failed"
    VALIDATE = "validate"
    EXPORT = "export"


TRANSITIONS: dict[tuple[InvoiceStatus, LifecycleEvent], InvoiceStatus] = {
    (InvoiceStatus.PENDING, LifecycleEvent.ANALYZE_SUCCEEDED): InvoiceStatus.PROCESSED,
    (InvoiceStatus.PROCESSED, LifecycleEvent.ANALYZE_SUCCEEDED): InvoiceStatus.PROCESSED,
    (InvoiceStatus.ERROR, LifecycleEvent.ANALYZE_SUCCEEDED): InvoiceStatus.PROCESSED,
    (InvoiceStatus.PENDING, LifecycleEvent.ANALYZE_FAILED): InvoiceStatus.ERROR,
    (InvoiceStatus.PROCESSED, LifecycleEvent.ANALYZE_FAILED): InvoiceStatus.ERROR,
    (InvoiceStatus.ERROR, LifecycleEvent.ANALYZE_FAILED): InvoiceStatus.ERROR,
    (InvoiceStatus.PROCESSED, LifecycleEvent.VALIDATE): InvoiceStatus.VALIDATED,
    (InvoiceStatus.VALIDATED, LifecycleEvent.EXPORT): InvoiceStatus.VALIDATED,
}

# Operation name -> event whose source states gate it
ACTION_EVENTS = {
    "analyze": LifecycleEvent.ANALYZE_SUCCEEDED,
    "validate": LifecycleEvent.VALIDATE,
    "export": LifecycleEvent.EXPORT,
}


def next_status(status: InvoiceStatus | str, event: LifecycleEvent) -> InvoiceStatus:
    """Return the state reached from status on event.

    Raises:
        InvalidTransitionError: The event is not allowed from status
    """
    current = InvoiceStatus(status)
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransitionError(current.value, event.value) from None


def can(status: InvoiceStatus | str, action: str) -> bool:
    return (InvoiceStatus(status), ACTION_EVENTS[action]) in TRANSITIONS


def ensure_can(status: InvoiceStatus | str, action: str) -> None:
    """Raise unless the operation is allowed from status.

    Args:
        status: Current invoice status
        action: One of 'analyze', 'validate', 'export'

    Raises:
        InvalidTransitionError: The operation is not allowed
    """
    if not can(status, action):
        raise InvalidTransitionError(InvoiceStatus(status).value, action)
