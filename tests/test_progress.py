"""Tests for progress module."""

from io import StringIO

from rich.console import Console

from discord_wrapped.progress import (
    FetchPhase,
    FetchProgress,
    RichProgressReporter,
    overall_percent,
)


class TestOverallPercent:
    """Tests for mapping phase progress onto the overall bar."""

    def test_phase_spans(self):
        assert overall_percent(FetchPhase.PHASE1, 0) == 0
        assert overall_percent(FetchPhase.PHASE1, 100) == 10
        assert overall_percent(FetchPhase.PHASE2, 50) == 40
        assert overall_percent(FetchPhase.PHASE2, 100) == 70
        assert overall_percent(FetchPhase.PHASE5, 100) == 100
        assert overall_percent(FetchPhase.DONE, 0) == 100

    def test_clamps_phase_pct(self):
        assert overall_percent(FetchPhase.PHASE3, 150) == 85
        assert overall_percent(FetchPhase.PHASE3, -5) == 70

    def test_error_is_zero(self):
        assert overall_percent(FetchPhase.ERROR, 80) == 0

    def test_terminal_phases(self):
        assert FetchPhase.DONE.is_terminal
        assert FetchPhase.ERROR.is_terminal
        assert not FetchPhase.PHASE2.is_terminal


class TestFetchProgress:
    """Tests for progress events."""

    def test_for_phase(self):
        event = FetchProgress.for_phase(FetchPhase.PHASE2, "Scanning", 50)

        assert event.phase_pct == 50
        assert event.overall_pct == 40
        assert event.error is None

    def test_to_dict(self):
        event = FetchProgress.for_phase(FetchPhase.PHASE4, "Sampling", 100)

        assert event.to_dict() == {
            "phase": "phase4",
            "phaseLabel": "Sampling",
            "phasePct": 100,
            "overallPct": 95,
        }

    def test_to_dict_includes_error(self):
        event = FetchProgress(phase=FetchPhase.ERROR, phase_label="Error: boom", error="boom")

        assert event.to_dict()["error"] == "boom"


class TestRichProgressReporter:
    """Tests for the rich progress bar renderer."""

    def make_reporter(self):
        output = StringIO()
        console = Console(file=output, force_terminal=False, width=100)
        return RichProgressReporter(console=console), output

    def test_tracks_overall_percent(self):
        reporter, _ = self.make_reporter()

        with reporter:
            reporter(FetchProgress.for_phase(FetchPhase.PHASE2, "Scanning", 50))
            task = reporter.progress.tasks[0]
            assert task.completed == 40
            assert "Scanning" in task.description

        assert reporter.last_event.phase == FetchPhase.PHASE2

    def test_done_completes_bar(self):
        reporter, _ = self.make_reporter()

        with reporter:
            reporter(FetchProgress.for_phase(FetchPhase.DONE, "Complete!", 100))

        assert reporter.progress.tasks[0].completed == 100

    def test_error_is_printed(self):
        reporter, output = self.make_reporter()

        with reporter:
            reporter(FetchProgress(phase=FetchPhase.ERROR, phase_label="Error: boom", error="boom"))

        assert "Error: boom" in output.getvalue()

    def test_works_without_context_manager(self):
        reporter, _ = self.make_reporter()

        reporter(FetchProgress.for_phase(FetchPhase.PHASE1, "Quick stats", 100))

        assert reporter.progress.tasks[0].completed == 10
