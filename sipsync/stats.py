"""Statistics derived from a replica snapshot.

Everything here is a pure function of the entries and a "now" instant.
An entry's calendar day is the local date it was logged on. When now
carries a named zone (ZoneInfo), entries are converted into that zone
instead, which follows daylight saving changes.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from .replica import DrinkEntry

STREAK_MILESTONES = [7, 14, 30, 60, 90, 100, 180, 365]
AVERAGE_WINDOW_DAYS = 30


def _zone(now: datetime) -> tzinfo | None:
    return now.tzinfo


def local_day(ts: datetime, zone: tzinfo | None = None) -> date:
    """Calendar day of ts.

    A fixed UTC offset cannot say which offset applied on another date, so
    without a named zone ts keeps the wall-clock date it carries.
    """
    if isinstance(zone, ZoneInfo):
        return ts.astimezone(zone).date()
    return ts.date()


def _today(now: datetime) -> date:
    return local_day(now, _zone(now))


def entries_on_day(
    entries: Iterable[DrinkEntry], day: date, now: datetime
) -> list[DrinkEntry]:
    zone = _zone(now)
    return [e for e in entries if local_day(e.timestamp, zone) == day]


def today_entries(entries: Iterable[DrinkEntry], now: datetime) -> list[DrinkEntry]:
    return entries_on_day(entries, _today(now), now)


def today_count(entries: Iterable[DrinkEntry], now: datetime) -> int:
    return len(today_entries(entries, now))


def today_ounces(entries: Iterable[DrinkEntry], now: datetime) -> float:
    return sum(e.ounces for e in today_entries(entries, now))


def streak(entries: Iterable[DrinkEntry], now: datetime) -> int:
    """Consecutive days with at least one entry, counting back from today.

    A day without entries ends the walk, and an empty today gives 0
    without looking further back.
    """
    zone = _zone(now)
    days = {local_day(e.timestamp, zone) for e in entries}

    count = 0
    check = local_day(now, zone)
    while check in days:
        count += 1
        check -= timedelta(days=1)
    return count


def this_week_count(entries: Iterable[DrinkEntry], now: datetime) -> int:
    """Entries in the ISO week (Monday to Sunday) containing now."""
    zone = _zone(now)
    week = local_day(now, zone).isocalendar()[:2]
    return sum(1 for e in entries if local_day(e.timestamp, zone).isocalendar()[:2] == week)


def rolling_count(
    entries: Iterable[DrinkEntry], now: datetime, window: timedelta
) -> int:
    """Entries logged within window before now."""
    if now.tzinfo is None:
        now = now.astimezone()
    start = now - window
    return sum(1 for e in entries if start < e.timestamp <= now)


@dataclass(frozen=True)
class DailyTotal:
    day: date
    count: int
    ounces: float

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.day.isoformat(), "count": self.count, "ounces": self.ounces}


def last_7_days(entries: Iterable[DrinkEntry], now: datetime) -> list[DailyTotal]:
    """Per-day totals for today and the six days before it, oldest first."""
    zone = _zone(now)
    today = local_day(now, zone)
    window = [today - timedelta(days=offset) for offset in range(6, -1, -1)]

    counts = {day: 0 for day in window}
    ounces = {day: 0.0 for day in window}
    for entry in entries:
        day = local_day(entry.timestamp, zone)
        if day in counts:
            counts[day] += 1
            ounces[day] += entry.ounces

    return [DailyTotal(day, counts[day], ounces[day]) for day in window]


def _recent_entries(entries: Iterable[DrinkEntry], now: datetime) -> tuple[list[DrinkEntry], int]:
    zone = _zone(now)
    cutoff = local_day(now, zone) - timedelta(days=AVERAGE_WINDOW_DAYS)
    recent = [e for e in entries if local_day(e.timestamp, zone) >= cutoff]
    active_days = len({local_day(e.timestamp, zone) for e in recent})
    return recent, min(AVERAGE_WINDOW_DAYS, active_days)


def average_daily_count(entries: Iterable[DrinkEntry], now: datetime) -> float:
    """Average entries per active day over the last 30 days."""
    recent, days = _recent_entries(entries, now)
    if days == 0:
        return 0.0
    return len(recent) / days


def average_daily_ounces(entries: Iterable[DrinkEntry], now: datetime) -> float:
    """Average ounces per active day over the last 30 days."""
    recent, days = _recent_entries(entries, now)
    if days == 0:
        return 0.0
    return sum(e.ounces for e in recent) / days


@dataclass(frozen=True)
class MilestoneProgress:
    current: int
    next: int
    progress: float

    @property
    def days_to_go(self) -> int:
        return self.next - self.current


def streak_milestone(current: int) -> MilestoneProgress:
    """Progress from the last reached milestone towards the next one."""
    next_milestone = next((m for m in STREAK_MILESTONES if m > current), current + 30)
    previous = next((m for m in reversed(STREAK_MILESTONES) if m <= current), 0)

    span = next_milestone - previous
    progress = (current - previous) / span if span > 0 else 1.0
    return MilestoneProgress(current=current, next=next_milestone, progress=min(progress, 1.0))


def is_on_milestone(current: int) -> bool:
    return current in STREAK_MILESTONES


def streak_encouragement(current: int) -> str:
    days_to_go = streak_milestone(current).days_to_go
    if days_to_go <= 1:
        return "Almost there!"
    elif days_to_go <= 3:
        return "So close!"
    elif days_to_go <= 7:
        return "Keep it up!"
    return f"{days_to_go} days to go"


@dataclass(frozen=True)
class DerivedStats:
    """Point-in-time statistics for display. Recomputed, never stored."""

    today_count: int
    today_ounces: float
    streak: int
    this_week_count: int = 0
    average_daily_count: float = 0.0
    average_daily_ounces: float = 0.0
    last_7_days: list[DailyTotal] = field(default_factory=list)
    total_count: int = 0
    computed_at: datetime | None = None

    @property
    def milestone(self) -> MilestoneProgress:
        return streak_milestone(self.streak)

    @property
    def last_7_days_totals(self) -> tuple[int, float]:
        return (
            sum(d.count for d in self.last_7_days),
            sum(d.ounces for d in self.last_7_days),
        )

    def to_dict(self) -> dict[str, Any]:
        milestone = self.milestone
        week_count, week_ounces = self.last_7_days_totals
        return {
            "today_count": self.today_count,
            "today_ounces": self.today_ounces,
            "streak": self.streak,
            "this_week_count": self.this_week_count,
            "average_daily_count": round(self.average_daily_count, 2),
            "average_daily_ounces": round(self.average_daily_ounces, 2),
            "total_count": self.total_count,
            "last_7_days": [d.to_dict() for d in self.last_7_days],
            "last_7_days_totals": {"count": week_count, "ounces": week_ounces},
            "milestone": {
                "next": milestone.next,
                "progress": round(milestone.progress, 3),
                "on_milestone": is_on_milestone(self.streak),
                "encouragement": streak_encouragement(self.streak),
            },
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
        }


def compute_stats(entries: Iterable[DrinkEntry], now: datetime) -> DerivedStats:
    """Compute every statistic from one snapshot of the entries."""
    snapshot = list(entries)
    return DerivedStats(
        today_count=today_count(snapshot, now),
        today_ounces=today_ounces(snapshot, now),
        streak=streak(snapshot, now),
        this_week_count=this_week_count(snapshot, now),
        average_daily_count=average_daily_count(snapshot, now),
        average_daily_ounces=average_daily_ounces(snapshot, now),
        last_7_days=last_7_days(snapshot, now),
        total_count=len(snapshot),
        computed_at=now,
    )
