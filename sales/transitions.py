from rest_framework.exceptions import ValidationError

from common.exceptions import InvalidStatusTransition
from sales.models import Order

Status = Order.Status

ACTIVE_STATUSES = (Status.PENDING, Status.PREPARING, Status.READY)

# Forward moves follow the kitchen flow; back moves let staff undo a mis-tap.
# COMPLETED orders are reopened rather than cancelled, and CANCELLED is terminal.
ALLOWED_TRANSITIONS = {
    Status.PENDING: {Status.PREPARING, Status.CANCELLED},
    Status.PREPARING: {Status.PENDING, Status.READY, Status.CANCELLED},
    Status.READY: {Status.PREPARING, Status.COMPLETED, Status.CANCELLED},
    Status.COMPLETED: {Status.READY, Status.PREPARING},
    Status.CANCELLED: set(),
}


def allowed_next_statuses(current):
    return sorted(ALLOWED_TRANSITIONS.get(current, set()))


def can_transition(current, requested):
    return requested in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current, requested):
    if requested not in Status.values:
        raise ValidationError({"status": f"Unknown order status '{requested}'."})
    if not can_transition(current, requested):
        raise InvalidStatusTransition(current, requested)
