"""Bounds on what a single drink entry may claim.

Each check returns None when the value is acceptable, or the message to
show the user. A rejected entry is never stored and never starts a cooldown.
"""

from datetime import datetime, timedelta

MIN_OUNCES_PER_ENTRY = 1
MAX_OUNCES_PER_ENTRY = 128
MAX_OUNCES_PER_DAY = 500
MAX_TIME_IN_PAST = timedelta(hours=24)
MAX_TIME_IN_FUTURE = timedelta(minutes=5)


def check_ounces(ounces: float) -> str | None:
    """Check the volume of one entry."""
    if not ounces >= MIN_OUNCES_PER_ENTRY:  # also catches NaN
        return f"Minimum {MIN_OUNCES_PER_ENTRY} oz per entry"
    if ounces > MAX_OUNCES_PER_ENTRY:
        return f"Maximum {MAX_OUNCES_PER_ENTRY} oz per entry"
    return None


def check_daily_ounces(current: float, new: float) -> str | None:
    """Check that new ounces fit under the daily cap.

    Args:
        current: Ounces already logged on the entry's day.
        new: Ounces of the entry being added.
    """
    if current + new <= MAX_OUNCES_PER_DAY:
        return None

    remaining = MAX_OUNCES_PER_DAY - current
    if remaining <= 0:
        return f"Daily limit of {MAX_OUNCES_PER_DAY} oz reached"
    return (
        f"Adding {int(new)} oz would exceed daily limit. "
        f"Max {int(remaining)} oz remaining."
    )


def check_timestamp(timestamp: datetime, now: datetime) -> str | None:
    """Check that a backdated or clock-skewed entry time is plausible."""
    if timestamp > now + MAX_TIME_IN_FUTURE:
        minutes = int(MAX_TIME_IN_FUTURE.total_seconds() // 60)
        return f"Time cannot be more than {minutes} minutes in the future"
    if timestamp < now - MAX_TIME_IN_PAST:
        hours = int(MAX_TIME_IN_PAST.total_seconds() // 3600)
        return f"Time cannot be more than {hours} hours in the past"
    return None
