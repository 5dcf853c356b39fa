"""Progress events emitted by the report pipeline."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TaskProgressColumn, TextColumn


class FetchPhase(Enum):
    """Pipeline states."""

    IDLE = "idle"
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    PHASE3 = "phase3"
    PHASE4 = "phase4"
    PHASE5 = "phase5"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (FetchPhase.DONE, FetchPhase.ERROR)


# Share of the overall bar owned by each phase, as (start, end) percent
PHASE_SPANS: dict[FetchPhase, tuple[int, int]] = {
    FetchPhase.IDLE: (0, 0),
    FetchPhase.PHASE1: (0, 10),
    FetchPhase.PHASE2: (10, 70),
    FetchPhase.PHASE3: (70, 85),
    FetchPhase.PHASE4: (85, 95),
    FetchPhase.PHASE5: (95, 100),
    FetchPhase.DONE: (100, 100),
}


def overall_percent(phase: FetchPhase, phase_pct: int) -> int:
    """Map a within-phase percentage onto the overall 0-100 scale."""
    if phase == FetchPhase.ERROR:
        return 0
    start, end = PHASE_SPANS[phase]
    return start + round((end - start) * max(0, min(phase_pct, 100)) / 100)


@dataclass(frozen=True)
class FetchProgress:
    """One progress update."""

    phase: FetchPhase
    phase_label: str
    phase_pct: int = 0
    overall_pct: int = 0
    error: Optional[str] = None

    @classmethod
    def for_phase(cls, phase: FetchPhase, label: str, phase_pct: int = 0) -> "FetchProgress":
        return cls(
            phase=phase,
            phase_label=label,
            phase_pct=phase_pct,
            overall_pct=overall_percent(phase, phase_pct),
        )

    def to_dict(self) -> dict:
        result = {
            "phase": self.phase.value,
            "phaseLabel": self.phase_label,
            "phasePct": self.phase_pct,
            "overallPct": self.overall_pct,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


class RichProgressReporter:
    """Renders pipeline progress events as a rich progress bar."""

    def __init__(self, console: Optional[Console] = None, progress: Optional[Progress] = None):
        self.console = console or Console()
        self.progress = progress or Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self.console,
        )
        self.task: Optional[TaskID] = None
        self.last_event: Optional[FetchProgress] = None

    def __enter__(self):
        self.progress.start()
        self.task = self.progress.add_task("[cyan]Starting...", total=100)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.progress.stop()

    def __call__(self, event: FetchProgress):
        """Update the bar from a progress event."""
        self.last_event = event
        if self.task is None:
            self.task = self.progress.add_task("[cyan]Starting...", total=100)

        if event.phase == FetchPhase.ERROR:
            self.progress.update(self.task, description=f"[red]{event.phase_label}")
            self.console.print(f"[red]Error:[/red] {event.error}")
            return

        color = "green" if event.phase == FetchPhase.DONE else "cyan"
        self.progress.update(
            self.task,
            description=f"[{color}]{event.phase_label}",
            completed=event.overall_pct,
        )
