"""Tests for derivations module."""

import pytest

from discord_wrapped.accumulators import Accumulators, HourStats, process_page
from discord_wrapped.config import DEFAULT_CATEGORY_PATTERNS
from discord_wrapped.derivations import (
    AVATAR_COLORS,
    build_channel_categories,
    channel_matches,
    circular_distance,
    circular_mean_hour,
    classify_channel,
    derive_all_nighter,
    derive_busiest_day,
    derive_category_trends,
    derive_channel_stats,
    derive_cumulative_series,
    derive_early_bird,
    derive_heatmap,
    derive_milestones,
    derive_most_helpful,
    derive_most_replied_thread,
    derive_most_thankful,
    derive_night_owl,
    derive_top_contributors,
    format_hour_minute,
    percentage_shares,
)
from discord_wrapped.models import Channel, Lookups, Member, MessageMeta


@pytest.fixture
def lookups():
    """Lookup tables for a handful of members and channels."""
    members = [
        Member(member_id="1", username="alice", global_name="Alice", avatar_url="https://cdn/a.png"),
        Member(member_id="2", username="bob", server_nick="Bobby"),
        Member(member_id="3", username="carol"),
        Member(member_id="4", username="lurker"),
    ]
    channels = [
        Channel(channel_id="c1", channel_name="general"),
        Channel(channel_id="c2", channel_name="flux_gens"),
        Channel(channel_id="c3", channel_name="fluxy"),
        Channel(channel_id="c4", channel_name="wan_gens"),
    ]
    return Lookups.build(members, channels)


def hour_stats_at(*hours):
    stats = HourStats()
    for hour in hours:
        stats.add(hour)
    return stats


class TestTopContributors:
    """Tests for the contributor leaderboard."""

    def test_ranked_by_count(self, lookups):
        result = derive_top_contributors({"1": 10, "2": 30, "3": 20}, lookups)

        assert [c.username for c in result] == ["Bobby", "carol", "Alice"]
        assert [c.rank for c in result] == [1, 2, 3]
        assert result[0].avatar == AVATAR_COLORS[0]
        assert result[2].avatar_url == "https://cdn/a.png"

    def test_limited_to_top_five(self, lookups):
        counts = {str(i): 100 - i for i in range(10)}
        result = derive_top_contributors(counts, lookups)

        assert len(result) == 5
        assert result[-1].messages == 96

    def test_ties_keep_first_seen_order(self, lookups):
        result = derive_top_contributors({"3": 5, "1": 5, "2": 5}, lookups)

        assert [c.username for c in result] == ["carol", "Alice", "Bobby"]

    def test_unknown_author_falls_back_to_id(self, lookups):
        result = derive_top_contributors({"999": 1}, lookups)

        assert result[0].username == "999"

    def test_zero_message_member_never_listed(self, lookups):
        result = derive_top_contributors({"1": 3, "4": 0}, lookups)

        assert [c.username for c in result] == ["Alice"]

    def test_empty(self, lookups):
        assert derive_top_contributors({}, lookups) == []


class TestMilestones:
    """Tests for milestone detection."""

    def test_threshold_crossed_on_third_date(self):
        date_counts = {"2024-01-01": 40000, "2024-01-02": 40000, "2024-01-03": 30000}

        result = derive_milestones(date_counts, "2024-01-01", [(100_000, "The First 100K")])

        assert len(result) == 1
        assert result[0].count == 100_000
        assert result[0].date == "2024-01-03"
        assert result[0].days_from_start == 2
        assert result[0].label == "The First 100K"

    def test_several_thresholds_on_one_day(self):
        date_counts = {"2024-01-01": 10, "2024-01-05": 500}

        result = derive_milestones(date_counts, "2024-01-01", [(100, "a"), (250, "b"), (1000, "c")])

        assert [(m.count, m.date) for m in result] == [(100, "2024-01-05"), (250, "2024-01-05")]

    def test_monotonic_and_never_repeated(self):
        date_counts = {f"2024-02-{d:02d}": 30 for d in range(1, 29)}
        thresholds = [(100, "a"), (250, "b"), (500, "c"), (750, "d")]

        result = derive_milestones(date_counts, "2024-02-01", thresholds)

        counts = [m.count for m in result]
        dates = [m.date for m in result]
        assert counts == [100, 250, 500, 750]
        assert len(set(counts)) == len(counts)
        assert dates == sorted(dates)

    def test_unsorted_input_dates(self):
        date_counts = {"2024-03-02": 60, "2024-03-01": 50}

        result = derive_milestones(date_counts, "2024-03-01", [(100, "a")])

        assert result[0].date == "2024-03-02"
        assert result[0].days_from_start == 1

    def test_unreached_threshold_is_omitted(self):
        assert derive_milestones({"2024-01-01": 5}, "2024-01-01", [(10, "a")]) == []


class TestCumulativeSeries:
    """Tests for the sampled cumulative series."""

    def test_samples_every_seventh_date_and_last(self):
        date_counts = {f"2024-01-{d:02d}": 1 for d in range(1, 16)}

        result = derive_cumulative_series(date_counts)

        assert [(p.date, p.cumulative) for p in result] == [
            ("2024-01-07", 7),
            ("2024-01-14", 14),
            ("2024-01-15", 15),
        ]

    def test_last_point_is_grand_total(self):
        date_counts = {"2024-01-01": 3, "2024-01-09": 4}

        result = derive_cumulative_series(date_counts)

        assert result[-1].cumulative == 7
        assert result[-1].date == "2024-01-09"

    def test_empty(self):
        assert derive_cumulative_series({}) == []


class TestHeatmap:
    """Tests for hour bucket collapsing."""

    def test_eight_buckets_preserve_total(self):
        acc = Accumulators()
        process_page(acc, [
            MessageMeta("1", "c1", "2024-03-04T00:10:00Z"),  # Monday bucket 0
            MessageMeta("1", "c1", "2024-03-04T02:59:00Z"),  # Monday bucket 0
            MessageMeta("1", "c1", "2024-03-05T03:00:00Z"),  # Tuesday bucket 3
            MessageMeta("1", "c1", "2024-03-10T23:00:00Z"),  # Sunday bucket 21
        ])

        rows = derive_heatmap(acc.heatmap)

        assert [r.hour for r in rows] == [0, 3, 6, 9, 12, 15, 18, 21]
        assert rows[0].data[0] == 2
        assert rows[1].data[1] == 1
        assert rows[7].data[6] == 1
        assert sum(sum(r.data) for r in rows) == 4


class TestChannelStats:
    """Tests for channel shares."""

    def test_top_five_plus_other(self, lookups):
        counts = {"c1": 40, "c2": 20, "c3": 15, "c4": 10, "c5": 8, "c6": 4, "c7": 3}

        result = derive_channel_stats(counts, lookups, total_messages=100)

        assert [s.name for s in result] == ["#general", "#flux_gens", "#fluxy", "#wan_gens", "c5", "Other"]
        assert result[-1].messages == 7
        assert result[-1].percentage == 7
        assert result[0].percentage == 40

    def test_no_other_row_when_few_channels(self, lookups):
        result = derive_channel_stats({"c1": 3, "c2": 1}, lookups, total_messages=4)

        assert [s.name for s in result] == ["#general", "#flux_gens"]
        assert [s.percentage for s in result] == [75, 25]

    def test_half_percent_rounds_up(self, lookups):
        result = derive_channel_stats({"c1": 1, "c2": 7}, lookups, total_messages=8)

        assert [s.percentage for s in result] == [88, 13]  # 87.5% and 12.5%

    def test_zero_total(self, lookups):
        assert derive_channel_stats({}, lookups, total_messages=0) == []


class TestCountAwards:
    """Tests for reply, gratitude and fun-stat winners."""

    def test_most_helpful_is_most_replies(self, lookups):
        award = derive_most_helpful({"1": 3, "2": 7}, lookups)

        assert award.username == "Bobby"
        assert award.count == 7
        assert award.metric == "helpful replies"

    def test_most_helpful_none_without_replies(self, lookups):
        assert derive_most_helpful({}, lookups) is None

    def test_most_thankful_counts_matches(self, lookups):
        award = derive_most_thankful(["1", "3", "3", "1", "3"], lookups)

        assert award.username == "carol"
        assert award.count == 3
        assert award.metric == "thank yous"

    def test_most_thankful_tie_first_seen_wins(self, lookups):
        award = derive_most_thankful(["2", "1", "1", "2"], lookups)

        assert award.username == "Bobby"

    def test_most_replied_thread(self):
        thread = derive_most_replied_thread({"m1": 2, "m2": 9})

        assert thread.message_id == "m2"
        assert thread.replies == 9

    def test_busiest_day(self):
        day = derive_busiest_day({"2024-01-01": 5, "2024-06-01": 50})

        assert day.date == "2024-06-01"
        assert day.messages == 50

    def test_empty_fun_stats(self):
        assert derive_most_replied_thread({}) is None
        assert derive_busiest_day({}) is None


class TestCircularTime:
    """Tests for circular hour statistics."""

    def test_midnight_wraparound(self):
        stats = hour_stats_at(*([23] * 50 + [1] * 50))

        mean = circular_mean_hour(stats.sin_sum, stats.cos_sum)

        assert circular_distance(mean, 0) == pytest.approx(0.0, abs=1e-6)

    def test_mean_is_in_range(self):
        stats = hour_stats_at(20, 21, 22)

        mean = circular_mean_hour(stats.sin_sum, stats.cos_sum)

        assert 0 <= mean < 24
        assert mean == pytest.approx(21.0)

    def test_degenerate_sums(self):
        assert circular_mean_hour(0.0, 0.0) == 0.0

    def test_circular_distance(self):
        assert circular_distance(23, 1) == 2
        assert circular_distance(1, 23) == 2
        assert circular_distance(6, 18) == 12
        assert circular_distance(3, 3) == 0

    def test_format_hour_minute(self):
        assert format_hour_minute(3.4) == "3:24 AM"
        assert format_hour_minute(0.0) == "12:00 AM"
        assert format_hour_minute(12.5) == "12:30 PM"
        assert format_hour_minute(15.0) == "3:00 PM"

    def test_format_never_shows_sixty_minutes(self):
        assert format_hour_minute(2.9999) == "3:00 AM"
        assert format_hour_minute(23.9999) == "12:00 AM"


class TestTimeOfDayAwards:
    """Tests for night owl, early bird and all-nighter."""

    def test_night_owl_closest_to_three(self, lookups):
        hour_stats = {
            "1": hour_stats_at(*([2] * 100)),
            "2": hour_stats_at(*([14] * 100)),
            "3": hour_stats_at(*([4] * 60 + [5] * 60)),
        }

        award = derive_night_owl(hour_stats, lookups)

        assert award.username == "Alice"
        assert award.avg_time == "2:00 AM"
        assert award.timezone == "UTC"

    def test_early_bird_closest_to_six(self, lookups):
        hour_stats = {
            "1": hour_stats_at(*([2] * 100)),
            "3": hour_stats_at(*([6] * 100)),
        }

        assert derive_early_bird(hour_stats, lookups).username == "carol"

    def test_minimum_sample_size(self, lookups):
        hour_stats = {"1": hour_stats_at(*([3] * 99))}

        assert derive_night_owl(hour_stats, lookups) is None
        assert derive_night_owl(hour_stats, lookups, min_messages=50).username == "Alice"

    def test_configurable_target(self, lookups):
        hour_stats = {
            "1": hour_stats_at(*([3] * 100)),
            "2": hour_stats_at(*([22] * 100)),
        }

        assert derive_night_owl(hour_stats, lookups, target_hour=23.0).username == "Bobby"

    def test_all_nighter_highest_ratio(self, lookups):
        late = {"1": 50, "2": 90, "3": 10}
        totals = {"1": 100, "2": 1000, "3": 100}

        award = derive_all_nighter(late, totals, lookups)

        assert award.username == "Alice"
        assert award.count == 50

    def test_all_nighter_requires_known_member(self, lookups):
        late = {"ghost": 100, "3": 10}
        totals = {"ghost": 100, "3": 100}

        assert derive_all_nighter(late, totals, lookups).username == "carol"

    def test_zero_message_member_gets_no_award(self, lookups):
        hour_stats = {"4": HourStats()}

        assert derive_night_owl(hour_stats, lookups, min_messages=0) is None
        assert derive_all_nighter({"4": 0}, {"4": 0}, lookups, min_messages=0) is None
        assert derive_most_helpful({"4": 0}, lookups) is None


class TestCategoryClassification:
    """Tests for channel to category matching."""

    def test_delimited_prefix_matches(self):
        assert channel_matches("flux_gens", "flux")
        assert channel_matches("flux-dev", "flux")
        assert channel_matches("flux", "flux")

    def test_bare_prefix_does_not_match(self):
        assert not channel_matches("fluxy", "flux")
        assert not channel_matches("myflux", "flux")

    def test_case_insensitive(self):
        assert channel_matches("Flux_Gens", "FLUX")

    def test_classify_first_category_wins(self):
        patterns = {"first": ["wan"], "second": ["wan_gens"]}

        assert classify_channel("wan_gens", patterns) == "first"

    def test_classify_default_table(self):
        assert classify_channel("flux_gens", DEFAULT_CATEGORY_PATTERNS) == "flux"
        assert classify_channel("fluxy", DEFAULT_CATEGORY_PATTERNS) is None
        assert classify_channel("general", DEFAULT_CATEGORY_PATTERNS) is None

    def test_build_channel_categories(self, lookups):
        result = build_channel_categories(lookups, {"flux": ["flux"], "wan": ["wan_gens"]})

        assert result == {"c2": "flux", "c4": "wan"}


class TestCategoryTrends:
    """Tests for normalized monthly category shares."""

    def test_months_sum_to_one_hundred(self):
        channel_month_counts = {
            "c2": {"2024-01": 1, "2024-02": 7},
            "c4": {"2024-01": 1, "2024-02": 3},
            "c5": {"2024-01": 1},
        }
        channel_categories = {"c2": "flux", "c4": "wan", "c5": "sd"}

        trends = derive_category_trends(channel_month_counts, channel_categories, ["sd", "flux", "wan"])

        assert [t.month for t in trends] == ["2024-01", "2024-02"]
        for trend in trends:
            assert sum(trend.shares.values()) == pytest.approx(100.0, abs=0.1)
        assert trends[1].shares == {"sd": 0.0, "flux": 70.0, "wan": 30.0}

    def test_thirds_round_to_exactly_one_hundred(self):
        shares = percentage_shares({"a": 1, "b": 1, "c": 1})

        assert sum(shares.values()) == pytest.approx(100.0)
        assert sorted(shares.values()) == [33.3, 33.3, 33.4]

    def test_zero_month_is_all_zeros(self):
        trends = derive_category_trends({"c2": {"2024-01": 0}}, {"c2": "flux"}, ["flux", "wan"])

        assert trends[0].shares == {"flux": 0.0, "wan": 0.0}

    def test_unclassified_channels_ignored(self):
        trends = derive_category_trends({"c1": {"2024-01": 50}}, {}, ["flux"])

        assert trends == []

    def test_to_dict_flattens_shares(self):
        trends = derive_category_trends({"c2": {"2024-01": 2}}, {"c2": "flux"}, ["flux", "wan"])

        assert trends[0].to_dict() == {"month": "2024-01", "flux": 100.0, "wan": 0.0}
