"""Webhook retry state machine and backoff schedule.

Pure functions, independent of the queue: the delivery worker asks for the next
state after each attempt and re-enqueues with the returned delay.
"""

MAX_ATTEMPTS = 5

# Seconds, indexed by the 1-based attempt that just failed; index 0 is unused.
PRODUCTION_SCHEDULE: tuple[int, ...] = (0, 60, 300, 1800, 7200)
TEST_SCHEDULE: tuple[int, ...] = (0, 5, 10, 15, 20)


def schedule_for(test_intervals: bool) -> tuple[int, ...]:
    return TEST_SCHEDULE if test_intervals else PRODUCTION_SCHEDULE


def backoff_seconds(attempt: int, schedule: tuple[int, ...] = PRODUCTION_SCHEDULE) -> int:
    """Delay before the attempt following failed attempt number `attempt`."""

    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if attempt >= len(schedule):
        return schedule[-1]
    return schedule[attempt]


def next_delivery_state(
    attempts: int,
    delivered: bool,
    schedule: tuple[int, ...] = PRODUCTION_SCHEDULE,
    max_attempts: int = MAX_ATTEMPTS,
) -> tuple[str, int | None]:
    """Return `(status, retry_delay_seconds)` after attempt number `attempts`.

    `retry_delay_seconds` is None when no further attempt should be scheduled.
    """

    if delivered:
        return "success", None
    if attempts >= max_attempts:
        return "failed", None
    return "pending", backoff_seconds(attempts, schedule)
