"""Report derivations over a finished accumulator.

Every function here is pure: it reads accumulator maps and lookup tables
and returns report fragments. Accumulator maps are defaultdicts, so lookups
use .get() to avoid inserting zero entries.
"""

import math
import re
from datetime import date
from typing import Iterable, Optional

from .accumulators import HourStats
from .models import (
    Award,
    BusiestDay,
    CategoryTrend,
    ChannelStat,
    Contributor,
    CumulativePoint,
    HeatmapRow,
    Lookups,
    Milestone,
    RepliedThread,
)


AVATAR_COLORS = [
    "#7C3AED", "#10B981", "#F59E0B", "#EF4444", "#3B82F6",
    "#EC4899", "#8B5CF6", "#06B6D4", "#F97316", "#14B8A6",
]

HEATMAP_BUCKET_HOURS = 3

CUMULATIVE_SAMPLE_EVERY = 7

OTHER_CHANNELS_LABEL = "Other"


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values."""
    return int(math.floor(value + 0.5))


def _first_max(counts: dict[str, int]) -> tuple[str, int]:
    """Key with the highest count; the first one encountered wins ties."""
    best_key, best_count = "", 0
    for key, count in counts.items():
        if count > best_count:
            best_key, best_count = key, count
    return best_key, best_count


# ============================================================================
# Leaderboards and series
# ============================================================================

def derive_top_contributors(
    author_counts: dict[str, int],
    lookups: Lookups,
    top_n: int = 5,
) -> list[Contributor]:
    """
    Rank authors by message count.

    Ties keep the order authors were first seen (sorted() is stable).

    Args:
        author_counts: Messages per author id
        lookups: Member display names and avatars
        top_n: Number of ranks to return

    Returns:
        Contributors ranked 1..top_n
    """
    ranked = sorted(author_counts.items(), key=lambda item: item[1], reverse=True)

    return [
        Contributor(
            rank=i + 1,
            username=lookups.member_name(author_id),
            messages=count,
            avatar=AVATAR_COLORS[i % len(AVATAR_COLORS)],
            avatar_url=lookups.member_avatars.get(author_id),
        )
        for i, (author_id, count) in enumerate(ranked[:top_n])
        if count > 0
    ]


def derive_milestones(
    date_counts: dict[str, int],
    start_date: str,
    thresholds: list[tuple[int, str]],
) -> list[Milestone]:
    """
    Find the first date the cumulative message count reached each threshold.

    Args:
        date_counts: Messages per YYYY-MM-DD date
        start_date: First message date, for days_from_start
        thresholds: (count, label) pairs in ascending order

    Returns:
        Milestones in threshold order
    """
    milestones: list[Milestone] = []
    if not thresholds:
        return milestones

    start = date.fromisoformat(start_date)
    cumulative = 0
    target_idx = 0

    for day, count in sorted(date_counts.items()):
        cumulative += count
        while target_idx < len(thresholds) and cumulative >= thresholds[target_idx][0]:
            target, label = thresholds[target_idx]
            milestones.append(Milestone(
                count=target,
                date=day,
                days_from_start=(date.fromisoformat(day) - start).days,
                label=label,
            ))
            target_idx += 1
        if target_idx >= len(thresholds):
            break

    return milestones


def derive_cumulative_series(
    date_counts: dict[str, int],
    sample_every: int = CUMULATIVE_SAMPLE_EVERY,
) -> list[CumulativePoint]:
    """Running total, one point per sample_every dates plus the last date."""
    points: list[CumulativePoint] = []
    sorted_dates = sorted(date_counts.items())
    if not sorted_dates:
        return points

    last_date = sorted_dates[-1][0]
    running_total = 0
    since_last_sample = 0

    for day, count in sorted_dates:
        running_total += count
        since_last_sample += 1
        if since_last_sample >= sample_every or day == last_date:
            points.append(CumulativePoint(date=day, cumulative=running_total))
            since_last_sample = 0

    return points


def derive_heatmap(heatmap: list[list[int]]) -> list[HeatmapRow]:
    """Collapse the 24x7 hour grid into eight three-hour buckets."""
    rows = []
    for start_hour in range(0, 24, HEATMAP_BUCKET_HOURS):
        data = [
            sum(heatmap[(start_hour + offset) % 24][day] for offset in range(HEATMAP_BUCKET_HOURS))
            for day in range(7)
        ]
        rows.append(HeatmapRow(hour=start_hour, data=data))
    return rows


def derive_channel_stats(
    channel_counts: dict[str, int],
    lookups: Lookups,
    total_messages: int,
    top_n: int = 5,
) -> list[ChannelStat]:
    """Top channels by volume, with the remainder folded into "Other"."""
    def pct(count: int) -> int:
        return round_half_up(count / total_messages * 100) if total_messages > 0 else 0

    ranked = sorted(channel_counts.items(), key=lambda item: item[1], reverse=True)
    stats = [
        ChannelStat(name=lookups.channel_name(channel_id), messages=count, percentage=pct(count))
        for channel_id, count in ranked[:top_n]
    ]

    other_count = sum(count for _, count in ranked[top_n:])
    if other_count > 0:
        stats.append(ChannelStat(name=OTHER_CHANNELS_LABEL, messages=other_count, percentage=pct(other_count)))

    return stats


# ============================================================================
# Count awards and fun stats
# ============================================================================

def derive_most_helpful(reply_counts: dict[str, int], lookups: Lookups) -> Optional[Award]:
    """Author of the most replies (a volume signal, not a quality one)."""
    author_id, count = _first_max(reply_counts)
    if not count:
        return None
    return Award(username=lookups.member_name(author_id), count=count, metric="helpful replies")


def derive_most_thankful(author_ids: Iterable[str], lookups: Lookups) -> Optional[Award]:
    """Author of the most messages matched by the gratitude search."""
    counts: dict[str, int] = {}
    for author_id in author_ids:
        counts[author_id] = counts.get(author_id, 0) + 1

    author_id, count = _first_max(counts)
    if not count:
        return None
    return Award(username=lookups.member_name(author_id), count=count, metric="thank yous")


def derive_most_replied_thread(reference_counts: dict[str, int]) -> Optional[RepliedThread]:
    message_id, count = _first_max(reference_counts)
    if not count:
        return None
    return RepliedThread(replies=count, topic="Most discussed thread", message_id=message_id)


def derive_busiest_day(date_counts: dict[str, int]) -> Optional[BusiestDay]:
    day, count = _first_max(date_counts)
    if not count:
        return None
    return BusiestDay(date=day, messages=count)


# ============================================================================
# Time-of-day awards
# ============================================================================

def circular_mean_hour(sin_sum: float, cos_sum: float) -> float:
    """
    Mean hour of day from summed unit vectors, in [0, 24).

    Averaging raw hours breaks across midnight (23 and 1 would give 12);
    the angle of the summed vectors does not.
    """
    angle = math.atan2(sin_sum, cos_sum)
    if angle < 0:
        angle += 2 * math.pi
    return ((angle / (2 * math.pi)) * 24) % 24


def circular_distance(a: float, b: float) -> float:
    """Distance between two hours on the 24-hour clock."""
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


def format_hour_minute(hour: float) -> str:
    """Format a fractional hour as '3:24 AM'."""
    total_minutes = round_half_up(hour * 60) % (24 * 60)
    h, m = divmod(total_minutes, 60)
    period = "PM" if h >= 12 else "AM"
    display_hour = 12 if h == 0 else h - 12 if h > 12 else h
    return f"{display_hour}:{m:02d} {period}"


def find_closest_to_hour(
    hour_stats: dict[str, HourStats],
    target_hour: float,
    lookups: Lookups,
    min_messages: int = 100,
) -> Optional[Award]:
    """
    Author whose circular mean posting hour is nearest target_hour.

    Args:
        hour_stats: Per-author trigonometric sums
        target_hour: Hour of day to match, in UTC
        lookups: Member display names
        min_messages: Minimum messages for an author to qualify

    Returns:
        Award with the author's average time, or None if nobody qualifies
    """
    best_id: Optional[str] = None
    best_dist = math.inf
    best_mean = target_hour

    for author_id, stats in hour_stats.items():
        if stats.n < min_messages or stats.n == 0:
            continue
        mean = circular_mean_hour(stats.sin_sum, stats.cos_sum)
        dist = circular_distance(mean, target_hour)
        if dist < best_dist:
            best_id, best_dist, best_mean = author_id, dist, mean

    if best_id is None:
        return None

    return Award(
        username=lookups.member_name(best_id),
        avg_time=format_hour_minute(best_mean),
        timezone="UTC",
    )


def derive_night_owl(
    hour_stats: dict[str, HourStats],
    lookups: Lookups,
    target_hour: float = 3.0,
    min_messages: int = 100,
) -> Optional[Award]:
    return find_closest_to_hour(hour_stats, target_hour, lookups, min_messages)


def derive_early_bird(
    hour_stats: dict[str, HourStats],
    lookups: Lookups,
    target_hour: float = 6.0,
    min_messages: int = 100,
) -> Optional[Award]:
    return find_closest_to_hour(hour_stats, target_hour, lookups, min_messages)


def derive_all_nighter(
    late_night_counts: dict[str, int],
    author_counts: dict[str, int],
    lookups: Lookups,
    min_messages: int = 100,
) -> Optional[Award]:
    """
    Author with the highest share of late-night messages.

    Only authors with at least min_messages and a known member record
    (people who left the server are skipped) qualify.
    """
    best_id: Optional[str] = None
    best_ratio = 0.0
    best_count = 0

    for author_id, late_count in late_night_counts.items():
        total = author_counts.get(author_id, 0)
        if total < min_messages or total == 0:
            continue
        if author_id not in lookups.member_names:
            continue
        ratio = late_count / total
        if ratio > best_ratio:
            best_id, best_ratio, best_count = author_id, ratio, late_count

    if best_id is None:
        return None

    return Award(
        username=lookups.member_name(best_id),
        count=best_count,
        metric="late night messages",
    )


# ============================================================================
# Category trends
# ============================================================================

_PATTERN_STRIP = re.compile(r"[^a-z0-9_-]")


def normalize_pattern(pattern: str) -> str:
    return _PATTERN_STRIP.sub("", pattern.lower())


def channel_matches(channel_name: str, pattern: str) -> bool:
    """Exact match, or a prefix followed by '_' or '-' ("flux" ~ "flux_gens", not "fluxy")."""
    name = channel_name.lower()
    pattern = normalize_pattern(pattern)
    if not pattern:
        return False
    return name == pattern or name.startswith(pattern + "_") or name.startswith(pattern + "-")


def classify_channel(channel_name: str, category_patterns: dict[str, list[str]]) -> Optional[str]:
    """First category (in table order) with a matching pattern, or None."""
    for category, patterns in category_patterns.items():
        if any(channel_matches(channel_name, p) for p in patterns):
            return category
    return None


def build_channel_categories(
    lookups: Lookups,
    category_patterns: dict[str, list[str]],
) -> dict[str, str]:
    """Map channel id -> category for every channel that classifies."""
    result = {}
    for channel_id, name in lookups.channel_raw_names.items():
        category = classify_channel(name, category_patterns)
        if category:
            result[channel_id] = category
    return result


def percentage_shares(counts: dict[str, int]) -> dict[str, float]:
    """
    Convert counts to percentages with one decimal place.

    Uses largest-remainder rounding on tenths of a percent, so a non-zero
    total always sums to exactly 100.0. A zero total yields all zeros.
    """
    total = sum(counts.values())
    if total == 0:
        return {key: 0.0 for key in counts}

    tenths = {key: (count * 1000) // total for key, count in counts.items()}
    remainders = {key: (count * 1000) % total for key, count in counts.items()}
    missing = 1000 - sum(tenths.values())
    for key in sorted(counts, key=lambda k: remainders[k], reverse=True)[:missing]:
        tenths[key] += 1

    return {key: t / 10 for key, t in tenths.items()}


def derive_category_trends(
    channel_month_counts: dict[str, dict[str, int]],
    channel_categories: dict[str, str],
    categories: list[str],
) -> list[CategoryTrend]:
    """
    Monthly share of activity per channel category.

    Args:
        channel_month_counts: channel id -> month -> messages
        channel_categories: channel id -> category
        categories: All category names, in output order

    Returns:
        One CategoryTrend per month with classified activity, oldest first
    """
    category_month_counts: dict[str, dict[str, int]] = {c: {} for c in categories}
    months: set[str] = set()

    for channel_id, month_counts in channel_month_counts.items():
        category = channel_categories.get(channel_id)
        if category is None or category not in category_month_counts:
            continue
        per_month = category_month_counts[category]
        for month, count in month_counts.items():
            months.add(month)
            per_month[month] = per_month.get(month, 0) + count

    trends = []
    for month in sorted(months):
        counts = {c: category_month_counts[c].get(month, 0) for c in categories}
        trends.append(CategoryTrend(month=month, shares=percentage_shares(counts)))

    return trends
