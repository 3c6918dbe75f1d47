"""Step runner: ordered execution with per-step failure policy."""

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from rich.console import Console

from .config import Configuration
from .exceptions import AgentVPSError, StepFailure
from .utils import warn

RUN_LOG_PATH = "/var/log/agentvps-setup.log"


class Policy(enum.Enum):
    FATAL = "fatal"
    WARN = "warn"


class RunState(enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    ABORTED = "aborted"
    COMPLETED = "completed"


@dataclass
class Step:
    """One unit of the pipeline.

    ``enabled`` decides from the configuration whether the step belongs to
    this run at all. ``satisfied`` probes live host state; when it returns
    True the step is skipped as already done. Interactive steps print their
    label on its own line so the operator sees the prompts that follow.
    """

    name: str
    label: str
    policy: Policy
    action: Callable[[], None]
    enabled: Callable[[Configuration], bool] | None = None
    satisfied: Callable[[], bool] | None = None
    note: str = ""
    interactive: bool = False


@dataclass
class Summary:
    state: RunState
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    disabled: list[str] = field(default_factory=list)
    warned: list[str] = field(default_factory=list)
    failed: str | None = None
    failed_label: str | None = None
    error: str | None = None
    log_path: str = RUN_LOG_PATH

    @property
    def ok(self) -> bool:
        return self.state is RunState.COMPLETED

    def as_dict(self) -> dict:
        return {
            "state": self.state.value,
            "completed": self.completed,
            "skipped": self.skipped,
            "disabled": self.disabled,
            "warned": self.warned,
            "failed": self.failed,
            "failed_label": self.failed_label,
            "error": self.error,
            "log_path": self.log_path,
        }


class RunLog:
    """Append-only file holding the full output of every executed step."""

    def __init__(self, path: str | Path = RUN_LOG_PATH):
        self.path = Path(path)
        self._fh: TextIO | None = None

    def open(self) -> "RunLog":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open("a", encoding="utf-8")
        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        self.write(f"=== agentvps run started {stamp} ===\n")
        return self

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def __enter__(self) -> "RunLog":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def write(self, text: str) -> None:
        if self._fh is None:
            raise RuntimeError("RunLog is not open")
        self._fh.write(text)
        if not text.endswith("\n"):
            self._fh.write("\n")
        self._fh.flush()

    def section(self, step: Step) -> None:
        self.write(f"\n--- [{step.name}] {step.label} ---\n")


class StepRunner:
    """Execute steps strictly in order.

    Each runner makes a single pass: NOT_STARTED -> RUNNING -> COMPLETED or
    ABORTED. A fatal failure stops the pass at that step; a warn failure is
    reported and the next step runs.
    """

    def __init__(self, run_log: RunLog, console: Console | None = None):
        self.run_log = run_log
        self.console = console or Console(highlight=False)
        self.state = RunState.NOT_STARTED
        self.current: Step | None = None
        self.summary: Summary | None = None

    def run(self, steps: list[Step], config: Configuration) -> Summary:
        """Run ``steps`` for ``config``.

        :raises StepFailure: When a fatal step fails
        """
        if self.state is not RunState.NOT_STARTED:
            raise RuntimeError(f"Runner already used (state: {self.state.value})")
        self.state = RunState.RUNNING
        summary = self.summary = Summary(RunState.RUNNING, log_path=str(self.run_log.path))

        for step in steps:
            self.current = step
            if step.enabled is not None and not step.enabled(config):
                summary.disabled.append(step.name)
                continue

            self.console.print(f"  {step.label}... ", end="\n" if step.interactive else "")
            self.run_log.section(step)
            try:
                if step.satisfied is not None and step.satisfied():
                    self.run_log.write("already satisfied, skipping")
                    self.console.print("[dim]already done[/dim]")
                    summary.skipped.append(step.name)
                    continue
                step.action()
            except (AgentVPSError, OSError) as e:
                self.run_log.write(f"step failed: {e}")
                if step.policy is Policy.FATAL:
                    self.console.print("[red]failed[/red]")
                    self.console.print(f"  See {self.run_log.path} for details")
                    self.state = summary.state = RunState.ABORTED
                    summary.failed, summary.failed_label, summary.error = step.name, step.label, str(e)
                    raise StepFailure(step.name, step.label, str(self.run_log.path), e)
                self.console.print("[red]failed (non-critical)[/red]")
                warn(f"{step.label} failed{f' ({step.note})' if step.note else ''}: {e}")
                summary.warned.append(step.name)
                continue
            except Exception as e:
                # not a host failure: aborts regardless of policy
                self.run_log.write(f"step crashed: {e!r}")
                self.console.print("[red]failed[/red]")
                self.state = summary.state = RunState.ABORTED
                summary.failed, summary.failed_label, summary.error = step.name, step.label, repr(e)
                raise

            self.console.print("[green]done[/green]")
            summary.completed.append(step.name)

        self.current = None
        self.state = summary.state = RunState.COMPLETED
        return summary
