"""Evaluation of change blockers against the clock."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rollout_core.schemas.change import Change
    from rollout_core.schemas.deployment_spec import InstanceSpec

# Far enough ahead that nothing is scheduled before it, without overflowing.
BLOCKED_INDEFINITELY = timedelta(seconds=1 << 30)


def blocked_until(
    spec: InstanceSpec,
    change: Change,
    now: datetime,
    lookahead: timedelta = timedelta(days=7),
) -> datetime | None:
    """First instant at which no blocker of the instance holds back the change.

    Steps forward a whole hour at a time, since windows are hour-granular.

    Args:
        spec: The instance whose change blockers apply.
        change: The change to check; only the axes it targets are considered.
        now: Current time.
        lookahead: How far ahead to search before giving up.

    Returns:
        None if the change is not blocked now; otherwise the end of the block,
        or a time far in the future if the block outlasts the lookahead.
    """
    if not spec.blocked_at(change, now):
        return None
    current = now.replace(minute=0, second=0, microsecond=0)
    while current < now + lookahead:
        current += timedelta(hours=1)
        if not spec.blocked_at(change, current):
            return current
    return now + BLOCKED_INDEFINITELY


__all__ = ["BLOCKED_INDEFINITELY", "blocked_until"]
