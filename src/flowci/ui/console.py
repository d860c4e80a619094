"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, List, Optional

from ..model import JobStatus, RunRecord

STATUS_MARKS = {
    JobStatus.SUCCEEDED: "✓",
    JobStatus.FAILED: "✗",
    JobStatus.SKIPPED: "⏭",
    JobStatus.CANCELLED: "⊘",
}


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """`debug` adds tracebacks and step logs; `quiet` keeps only failures and results."""
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, workflow: str, job_count: int, event: str) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._out("\nRUN STARTED", f"Workflow: {workflow}", f"Event: {event}", f"Jobs: {job_count}", "")

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        if not self.quiet:
            self._out(f"[{job}] ▶ {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        if not self.quiet:
            self._out(f"[{job}] ⏭ {name} (condition false)")

    def print_step_failed(
        self,
        job: str,
        name: str,
        reason: str,
        *,
        continue_on_error: bool = False,
        output: Optional[str] = None,
    ) -> None:
        """Report a failed step; `output` is the tail of whatever it printed."""
        suffix = " (continue-on-error)" if continue_on_error else ""
        lines = [f"[{job}] STEP FAILED: {name}{suffix}"]
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        if output:
            lines.append(output.rstrip())
        self._out(*lines)

    def print_step_output(self, job: str, text: str) -> None:
        """Print captured step output (debug mode only)."""
        if self.debug and text:
            self._out(*(f"[{job}] {line}" for line in text.rstrip().splitlines()))

    def print_job_finished(self, record: RunRecord) -> None:
        if self.quiet and record.status is not JobStatus.FAILED:
            return
        mark = STATUS_MARKS.get(record.status, "?")
        line = f"{mark} {record.job}: {record.status.value}"
        if record.duration is not None:
            line += f" ({record.duration:.1f}s)"
        if record.error_kind and record.status is not JobStatus.SUCCEEDED:
            line += f" [{record.error_kind}]"
        self._out(line)

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print topological stages of a workflow."""
        for idx, level in enumerate(levels):
            self._out(f"=== Stage {idx + 1} ===")
            for name in level:
                self._out(f"  {name}")

    def print_results(self, status: str, records: Iterable[RunRecord]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for rec in records:
            line = f"  {rec.job}: {rec.status.value.upper()}"
            if rec.error and rec.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                line += f" ({rec.error.splitlines()[0]})"
            lines.append(line)
        lines.append("-" * 40)
        lines.append(f"RUN {status.upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print an error block to stderr: title, message, indented detail
        lines and an optional hint on how to fix it.
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_info(self, message: str) -> None:
        """Print a message unless quiet."""
        if not self.quiet:
            self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Process-wide console; the CLI replaces it with set_console()
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
