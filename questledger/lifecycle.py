"""
Quest lifecycle state machine. Pure functions, no state.

    upcoming --(now >= start)--> active --(now >= end)--> ended

Linear, no back-transitions, no cancellation. Status is always derived
from (start, end, now). The status stored on a Quest is a cache and is
never read at a decision point.

Side effects of the transitions (start snapshot, end snapshot,
settlement) live in QuestEngine.tick_lifecycle(); this module only
answers "which phase is it".
"""

from datetime import datetime

from questledger.errors import (
    ValidationError, RegistrationClosed, QuestNotStarted, QuestEnded,
    QuestNotEnded,
)
from questledger.models import UPCOMING, ACTIVE, ENDED


def validate_window(start: datetime, end: datetime) -> None:
    """
    Construction-time check. Timestamps must be timezone-aware and
    end must be strictly after start; anything else is not a quest.
    """
    if start.tzinfo is None or end.tzinfo is None:
        raise ValidationError(
            "quest timestamps must be timezone-aware", kind="invalid_window")
    if end <= start:
        raise ValidationError(
            f"quest end {end.isoformat()} must be after "
            f"start {start.isoformat()}", kind="invalid_window")


def quest_status(start: datetime, end: datetime, now: datetime) -> str:
    """
    Total for any valid window: exactly one of upcoming/active/ended.
    Monotonic in `now`.
    """
    if now < start:
        return UPCOMING
    if now < end:
        return ACTIVE
    return ENDED


def require_registration_open(quest, now: datetime) -> None:
    """Joining closes at start, inclusive: now == start is too late."""
    if now >= quest.start_time:
        raise RegistrationClosed(
            f"quest {quest.id}: registration closed at "
            f"{quest.start_time.isoformat()}")


def require_trading_open(quest, now: datetime) -> None:
    status = quest_status(quest.start_time, quest.end_time, now)
    if status == UPCOMING:
        raise QuestNotStarted(
            f"quest {quest.id}: trading opens at "
            f"{quest.start_time.isoformat()}")
    if status == ENDED:
        raise QuestEnded(
            f"quest {quest.id}: trading closed at "
            f"{quest.end_time.isoformat()}")


def require_ended(quest, now: datetime) -> None:
    if quest_status(quest.start_time, quest.end_time, now) != ENDED:
        raise QuestNotEnded(
            f"quest {quest.id}: ends at {quest.end_time.isoformat()}")


# Sort priority for quest listings: running quests first, then upcoming,
# then finished.
_STATUS_ORDER = {ACTIVE: 0, UPCOMING: 1, ENDED: 2}


def listing_key(quest, now: datetime) -> tuple:
    """
    Ordering for quest lists:
    active ending soonest, upcoming starting soonest, ended most recent.
    """
    status = quest_status(quest.start_time, quest.end_time, now)
    if status == ACTIVE:
        moment = quest.end_time.timestamp()
    elif status == UPCOMING:
        moment = quest.start_time.timestamp()
    else:
        moment = -quest.end_time.timestamp()
    return (_STATUS_ORDER[status], moment, quest.id)
