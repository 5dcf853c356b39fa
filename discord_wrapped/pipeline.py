"""
Report assembler - runs the fetch/aggregate phases and builds the report.

Phases run strictly in order:
  1. quick stats (counts, lookups, date range, highlighted message)
  2. full metadata scan into the accumulator, then derivations
  3. targeted content queries (gratitude search)
  4. content sampling (fun stats)
  5. curated media per month (optional)

After each phase the merged report is published to on_partial so callers
can render progressively. Any unrecoverable failure moves the run to the
terminal ERROR state.
"""

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union

from .accumulators import Accumulators, process_page
from .config import WrappedConfig
from .derivations import (
    build_channel_categories,
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
)
from .media import MediaCurator
from .models import (
    Channel,
    DateRange,
    FunStats,
    HighlightedMessage,
    Lookups,
    Member,
    MessageBrief,
    MESSAGE_ORDER,
    MessageMeta,
    WrappedReport,
)
from .progress import FetchPhase, FetchProgress
from .sampler import (
    ContentSampler,
    derive_longest_message,
    derive_most_used_emoji,
    derive_most_used_word,
)
from .store_client import FetchCancelled, StoreClient

logger = logging.getLogger(__name__)

ProgressListener = Callable[[FetchProgress], None]
PartialListener = Callable[[FetchPhase, WrappedReport], None]


class PipelineError(Exception):
    """Raised when a run ends in the ERROR state."""

    def __init__(self, message: str, phase: FetchPhase):
        super().__init__(message)
        self.phase = phase


class ReportSink(Protocol):
    """Anything that can persist a finished report."""

    def save(self, report: WrappedReport) -> Any:
        ...


class JsonFileSink:
    """Writes the report to a JSON file."""

    def __init__(self, output_path: Union[Path, str]):
        self.output_path = Path(output_path)

    def save(self, report: WrappedReport) -> Path:
        path = report.save(self.output_path)
        logger.info(f"Report saved to: {path}")
        return path


@dataclass
class QuickStats:
    """Phase 1 output needed by later phases."""

    total_messages: int
    lookups: Lookups
    start_date: Optional[str]
    end_date: Optional[str]
    channel_categories: dict[str, str] = field(default_factory=dict)


class ReportAssembler:
    """
    Drives one pipeline run.

    An assembler is single-use: run() may be called once.
    """

    def __init__(
        self,
        client: StoreClient,
        config: WrappedConfig,
        on_progress: Optional[ProgressListener] = None,
        on_partial: Optional[PartialListener] = None,
        sink: Optional[ReportSink] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the assembler.

        Args:
            client: Store client for all queries
            config: Run configuration
            on_progress: Receives every progress event
            on_partial: Receives (completed phase, merged report) at each phase boundary
            sink: Persists the final report
            rng: Random source for content sampling
        """
        self.client = client
        self.config = config
        self.on_progress = on_progress
        self.on_partial = on_partial
        self.sink = sink
        self.rng = rng or random.Random(config.sampling.seed)

        self.state = FetchPhase.IDLE
        self.report = WrappedReport()
        self.progress = FetchProgress(phase=FetchPhase.IDLE, phase_label="Initializing...")
        self._cancel_event = threading.Event()

    @property
    def messages_table(self) -> str:
        return self.config.store.messages_table

    def cancel(self):
        """Abandon the run; in-flight fetches are dropped and the run ends in ERROR."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, phase: FetchPhase, label: str, phase_pct: int = 0):
        self.progress = FetchProgress.for_phase(phase, label, phase_pct)
        if self.on_progress:
            self.on_progress(self.progress)

    def _enter(self, phase: FetchPhase, label: str):
        if self._cancel_event.is_set():
            raise FetchCancelled(f"run cancelled before {phase.value}")
        self.state = phase
        logger.info(f"{phase.value}: {label}")
        self._emit(phase, label, 0)

    def _checkpoint(self, phase: FetchPhase, **fields):
        """Merge phase output into a new report snapshot and publish it."""
        self.report = replace(self.report, **fields)
        if self.on_partial:
            self.on_partial(phase, self.report)

    def _fail(self, phase: FetchPhase, error: BaseException) -> PipelineError:
        message = str(error) or error.__class__.__name__
        logger.error(f"Pipeline failed during {phase.value}: {message}")
        self.state = FetchPhase.ERROR
        self.progress = FetchProgress(
            phase=FetchPhase.ERROR,
            phase_label=f"Error: {message}",
            error=message,
        )
        if self.on_progress:
            self.on_progress(self.progress)
        return PipelineError(f"Failed during {phase.value}: {message}", phase)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> WrappedReport:
        """
        Execute all phases and return the final report.

        Returns:
            The complete, immutable WrappedReport

        Raises:
            PipelineError: If any phase fails or the run is cancelled
        """
        if self.state != FetchPhase.IDLE:
            raise RuntimeError("ReportAssembler.run() can only be called once")

        try:
            quick = self._run_phase1()
            self._run_phase2(quick)
            self._run_phase3(quick)
            self._run_phase4(quick)
            if self.config.media.enabled:
                self._run_phase5(quick)

            final = replace(self.report, generated_at=datetime.now(timezone.utc).isoformat())
            if self.sink is not None:
                self.sink.save(final)
        except Exception as e:
            raise self._fail(self.state, e) from e

        self.report = final
        if self.on_partial:
            self.on_partial(FetchPhase.DONE, final)

        self.state = FetchPhase.DONE
        self._emit(FetchPhase.DONE, "Complete!", 100)
        return self.report

    def _run_phase1(self) -> QuickStats:
        """Quick stats: totals, lookups, date range and the highlighted message."""
        self._enter(FetchPhase.PHASE1, "Fetching quick stats...")
        store = self.config.store
        table = self.messages_table

        with ThreadPoolExecutor(max_workers=5) as executor:
            total_future = executor.submit(self.client.get_total_count, table)
            members_future = executor.submit(
                self.client.fetch_all,
                store.members_table,
                "member_id,username,global_name,server_nick,avatar_url",
                order="member_id.asc",
                cancel_event=self._cancel_event,
            )
            channels_future = executor.submit(
                self.client.fetch_all,
                store.channels_table,
                "channel_id,channel_name",
                order="channel_id.asc",
                cancel_event=self._cancel_event,
            )
            first_future = executor.submit(
                self.client.fetch_page, table, select="created_at", order=MESSAGE_ORDER, limit=1
            )
            last_future = executor.submit(
                self.client.fetch_page, table, select="created_at", order="created_at.desc", limit=1
            )

            total_messages = total_future.result()
            members = [Member.from_row(r) for r in members_future.result()]
            channels = [Channel.from_row(r) for r in channels_future.result()]
            first_rows = first_future.result().rows
            last_rows = last_future.result().rows

        lookups = Lookups.build(members, channels)
        start_date = first_rows[0]["created_at"][:10] if first_rows else None
        end_date = last_rows[0]["created_at"][:10] if last_rows else None
        self._emit(FetchPhase.PHASE1, "Fetching highlighted message...", 80)

        highlighted = self._fetch_highlighted(total_messages, lookups)
        channel_categories = build_channel_categories(lookups, self.config.category_patterns)

        logger.info(f"Total messages: {total_messages:,}")
        logger.info(f"Members: {len(members)}, Channels: {len(channels)}")
        logger.info(f"Date range: {start_date} -> {end_date}")
        logger.info(f"Channels mapped to categories: {len(channel_categories)}")

        self._emit(FetchPhase.PHASE1, "Quick stats ready", 100)
        self._checkpoint(
            FetchPhase.PHASE1,
            total_messages=total_messages,
            total_members=len(members),
            total_channels=len(channels),
            date_range=DateRange(start=start_date, end=end_date) if start_date and end_date else None,
            highlighted_message=highlighted,
        )

        return QuickStats(
            total_messages=total_messages,
            lookups=lookups,
            start_date=start_date,
            end_date=end_date,
            channel_categories=channel_categories,
        )

    def _fetch_highlighted(self, total_messages: int, lookups: Lookups) -> Optional[HighlightedMessage]:
        offset = self.config.highlighted_offset
        if offset < 0 or total_messages <= offset:
            return None

        page = self.client.fetch_page(
            self.messages_table,
            select="author_id,channel_id,content,created_at",
            order=MESSAGE_ORDER,
            limit=1,
            offset=offset,
        )
        if not page.rows:
            return None

        message = MessageBrief.from_row(page.rows[0])
        return HighlightedMessage(
            author=lookups.member_name(message.author_id),
            channel=lookups.channel_name(message.channel_id),
            content=message.content,
            timestamp=message.created_at,
            avatar_url=lookups.member_avatars.get(message.author_id),
        )

    def _run_phase2(self, quick: QuickStats):
        """Full metadata scan, then every accumulator-based derivation."""
        self._enter(FetchPhase.PHASE2, "Scanning all messages...")
        awards_cfg = self.config.awards
        acc = Accumulators(
            late_night_start=awards_cfg.late_night_start,
            late_night_end=awards_cfg.late_night_end,
        )

        def fold(rows: list[dict]):
            process_page(acc, [MessageMeta.from_row(r) for r in rows])

        def report_scan(fetched: int, total: int):
            pct = round(fetched / total * 100) if total else 100
            self._emit(FetchPhase.PHASE2, f"Scanning messages... {fetched:,} / {total:,}", pct)

        self.client.fetch_all_pages_streaming(
            self.messages_table,
            "author_id,channel_id,created_at,reference_id",
            fold,
            order=MESSAGE_ORDER,
            on_progress=report_scan,
            concurrency=self.config.fetch.concurrency,
            total_count=quick.total_messages,
            cancel_event=self._cancel_event,
        )

        if acc.rows_processed != quick.total_messages:
            logger.warning(
                f"Scanned {acc.rows_processed:,} rows but the table reported "
                f"{quick.total_messages:,}; the source changed during the scan"
            )

        lookups = quick.lookups
        milestones = []
        if quick.start_date:
            milestones = derive_milestones(acc.date_counts, quick.start_date, self.config.milestones)

        awards = replace(
            self.report.awards,
            most_helpful=derive_most_helpful(acc.reply_counts, lookups),
            night_owl=derive_night_owl(
                acc.author_hour_stats, lookups,
                target_hour=awards_cfg.night_owl_hour,
                min_messages=awards_cfg.min_messages,
            ),
            early_bird=derive_early_bird(
                acc.author_hour_stats, lookups,
                target_hour=awards_cfg.early_bird_hour,
                min_messages=awards_cfg.min_messages,
            ),
            all_nighter=derive_all_nighter(
                acc.author_late_night_counts, acc.author_counts, lookups,
                min_messages=awards_cfg.min_messages,
            ),
        )
        fun_stats = replace(
            self.report.fun_stats,
            most_replied_thread=derive_most_replied_thread(acc.reference_counts),
            busiest_day=derive_busiest_day(acc.date_counts),
        )

        self._checkpoint(
            FetchPhase.PHASE2,
            top_contributors=tuple(derive_top_contributors(acc.author_counts, lookups)),
            milestones=tuple(milestones),
            cumulative_messages=tuple(derive_cumulative_series(acc.date_counts)),
            activity_heatmap=tuple(derive_heatmap(acc.heatmap)),
            channel_stats=tuple(derive_channel_stats(acc.channel_counts, lookups, quick.total_messages)),
            category_trends=tuple(derive_category_trends(
                acc.channel_month_counts, quick.channel_categories, self.config.categories,
            )),
            awards=awards,
            fun_stats=fun_stats,
        )

    def _run_phase3(self, quick: QuickStats):
        """Targeted content queries (gratitude search)."""
        keyword = self.config.awards.gratitude_keyword
        self._enter(FetchPhase.PHASE3, "Finding grateful members...")

        rows = self.client.fetch_like_search(
            self.messages_table,
            "content",
            keyword,
            select="author_id",
            order="message_id.asc",
            cancel_event=self._cancel_event,
        )
        author_ids = [str(r["author_id"]) for r in rows if r.get("author_id")]
        logger.info(f"Gratitude search matched {len(author_ids):,} messages")
        self._emit(FetchPhase.PHASE3, "Gratitude search complete", 100)

        self._checkpoint(
            FetchPhase.PHASE3,
            awards=replace(self.report.awards, most_thankful=derive_most_thankful(author_ids, quick.lookups)),
        )

    def _run_phase4(self, quick: QuickStats):
        """Content sampling for text-derived fun stats."""
        self._enter(FetchPhase.PHASE4, "Computing fun stats...")
        sampler = ContentSampler(
            self.client,
            self.messages_table,
            sample_pages=self.config.sampling.sample_pages,
            rng=self.rng,
        )

        def report_sample(done: int, total: int):
            self._emit(FetchPhase.PHASE4, f"Sampling content... {done}/{total}", round(done / total * 100))

        samples = sampler.sample(
            quick.total_messages,
            on_page_done=report_sample,
            cancel_event=self._cancel_event,
        )

        fun_stats: FunStats = replace(
            self.report.fun_stats,
            longest_message=derive_longest_message(samples, quick.lookups),
            most_used_emoji=derive_most_used_emoji(samples),
            most_used_word=derive_most_used_word(samples),
        )
        self._checkpoint(FetchPhase.PHASE4, fun_stats=fun_stats)

    def _run_phase5(self, quick: QuickStats):
        """Curated media per month; individual month failures are tolerated."""
        self._enter(FetchPhase.PHASE5, "Finding top media posts...")
        if not quick.start_date or not quick.end_date:
            self._checkpoint(FetchPhase.PHASE5, top_media=())
            return

        curator = MediaCurator(
            self.client,
            self.messages_table,
            settings=self.config.media,
            concurrency=self.config.fetch.concurrency,
        )

        def report_month(done: int, total: int):
            self._emit(FetchPhase.PHASE5, f"Top media... {done}/{total} months", round(done / total * 100))

        top_media = curator.curate(quick.start_date, quick.end_date, quick.lookups, on_month_done=report_month)
        self._checkpoint(FetchPhase.PHASE5, top_media=tuple(top_media))


def build_report(
    config: WrappedConfig,
    client: Optional[StoreClient] = None,
    on_progress: Optional[ProgressListener] = None,
    on_partial: Optional[PartialListener] = None,
    output_path: Optional[Union[Path, str]] = None,
) -> WrappedReport:
    """
    Convenience function to run the pipeline and optionally save the report.

    Args:
        config: Run configuration
        client: Store client (created from config when omitted)
        on_progress: Progress listener
        on_partial: Partial-report listener
        output_path: Path to save the report JSON (optional)

    Returns:
        The final WrappedReport
    """
    owns_client = client is None
    client = client or StoreClient(config.store, config.fetch)
    sink = JsonFileSink(output_path) if output_path else None

    try:
        assembler = ReportAssembler(
            client,
            config,
            on_progress=on_progress,
            on_partial=on_partial,
            sink=sink,
        )
        return assembler.run()
    finally:
        if owns_client:
            client.close()
