"""Running aggregates for the full message scan.

The accumulator is folded page by page from a single consumer thread; the
fetch workers never touch it.
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from .models import MessageMeta, parse_timestamp


HOURS_PER_DAY = 24
DAYS_PER_WEEK = 7


@dataclass
class HourStats:
    """Trigonometric sums for the circular mean of posting hour."""

    sin_sum: float = 0.0
    cos_sum: float = 0.0
    n: int = 0

    def add(self, hour: int):
        angle = (hour / HOURS_PER_DAY) * 2 * math.pi
        self.sin_sum += math.sin(angle)
        self.cos_sum += math.cos(angle)
        self.n += 1


def _empty_heatmap() -> list[list[int]]:
    return [[0] * DAYS_PER_WEEK for _ in range(HOURS_PER_DAY)]


@dataclass
class Accumulators:
    """All per-run counters built from the metadata scan."""

    author_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    channel_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    date_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    heatmap: list[list[int]] = field(default_factory=_empty_heatmap)  # [hour][weekday]
    reply_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    reference_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    author_hour_stats: dict[str, HourStats] = field(default_factory=lambda: defaultdict(HourStats))
    channel_month_counts: dict[str, dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: defaultdict(int))
    )
    author_late_night_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    late_night_start: int = 0
    late_night_end: int = 5
    rows_processed: int = 0

    @property
    def total(self) -> int:
        return self.rows_processed


def process_page(acc: Accumulators, rows: Iterable[MessageMeta]) -> None:
    """
    Fold one page of message metadata into the accumulator in place.

    Every update is a per-row increment, so the result does not depend on
    the order pages arrive in.

    Args:
        acc: Accumulator to update
        rows: Decoded message metadata rows
    """
    for row in rows:
        author = row.author_id
        acc.author_counts[author] += 1
        acc.channel_counts[row.channel_id] += 1

        date_str = row.created_at[:10]
        month_str = row.created_at[:7]
        acc.date_counts[date_str] += 1

        ts = parse_timestamp(row.created_at)
        hour = ts.hour
        acc.heatmap[hour][ts.weekday()] += 1  # Monday=0 .. Sunday=6

        if row.reference_id:
            acc.reply_counts[author] += 1
            acc.reference_counts[row.reference_id] += 1

        acc.author_hour_stats[author].add(hour)
        acc.channel_month_counts[row.channel_id][month_str] += 1

        if acc.late_night_start <= hour <= acc.late_night_end:
            acc.author_late_night_counts[author] += 1

        acc.rows_processed += 1
