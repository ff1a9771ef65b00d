"""Status transitions for payments, orders, refunds and webhook logs."""

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"success", "failed"},
    "success": set(),
    "failed": set(),
}

ORDER_TRANSITIONS: dict[str, set[str]] = {
    "created": {"paid"},
    "paid": set(),
}

REFUND_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processed"},
    "processed": set(),
}

# A finished log only moves back to `pending` through a manual retry.
WEBHOOK_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"pending", "success", "failed"},
    "success": {"pending"},
    "failed": {"pending"},
}


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = PAYMENT_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
