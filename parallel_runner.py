#!/usr/bin/env python3
"""
QuickMark Parallel Runner
Runs quickmark_runner.py against several Vast.ai machines at once and shows a
live status table until every run has finished.

Each machine gets its own child process, log file and per-run result file.
Only this process writes the shared results file: a run's record is merged
in when the run is seen to exit successfully.
"""

import sys
import time
import queue
import signal
import logging
import argparse
import threading
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from dotenv import load_dotenv
from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from errors import CorruptStore
from result_store import ResultStore
from vast_manager import VastManager
from utils import (
    setup_logging,
    load_config,
    validate_config,
    format_duration,
    last_log_line,
    parse_machine_ids,
)


console = Console()


class AttemptState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "success"
    FAILED = "failed"


@dataclass
class RunAttempt:
    """One benchmark run for one machine; owned by ParallelRunner"""
    key: str
    target_id: int
    log_path: Path
    state: AttemptState = AttemptState.PENDING
    exit_code: Optional[int] = None
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    error: Optional[str] = None
    process: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    def artifact(self, suffix: str) -> Path:
        """Sibling file of the log sharing its stem"""
        return self.log_path.with_name(f"{self.log_path.stem}{suffix}")

    @property
    def result_path(self) -> Path:
        return self.artifact(".result.json")

    @property
    def is_terminal(self) -> bool:
        return self.state in (AttemptState.SUCCEEDED, AttemptState.FAILED)

    def mark_running(self, process: Optional[subprocess.Popen], now: float):
        if self.state is not AttemptState.PENDING:
            raise RuntimeError(f"Attempt {self.key} already started")
        self.process = process
        self.started_at = now
        self.state = AttemptState.RUNNING

    def mark_finished(self, exit_code: int, now: float) -> bool:
        """Record termination once; later calls are ignored and return False."""
        if self.is_terminal:
            return False
        self.exit_code = exit_code
        self.ended_at = now
        self.state = AttemptState.SUCCEEDED if exit_code == 0 else AttemptState.FAILED
        return True

    def duration(self, now: float) -> float:
        if self.started_at is None:
            return 0.0
        return (self.ended_at if self.ended_at is not None else now) - self.started_at

    def status_text(self) -> str:
        if self.state is AttemptState.FAILED:
            return f"failed({self.exit_code})"
        return self.state.value


STATE_STYLES = {
    AttemptState.PENDING: "dim",
    AttemptState.RUNNING: "cyan",
    AttemptState.SUCCEEDED: "green",
    AttemptState.FAILED: "red",
}


class ParallelRunner:
    """Launches one child process per machine and tracks them to completion"""

    def __init__(
        self,
        machine_ids: Iterable[int],
        command_builder: Callable[[RunAttempt], List[str]],
        store: ResultStore,
        log_dir: Path,
        teardown: Optional[Callable[[int], None]] = None,
        status_interval: float = 5.0,
        grace_period: float = 1.0,
        console: Optional[Console] = None
    ):
        """
        Initialize the parallel runner.

        Args:
            machine_ids: Target machine IDs; duplicates run independently
            command_builder: Returns the child command line for an attempt
            store: Shared result store (written only by this runner)
            log_dir: Directory for per-attempt logs and result files
            teardown: Called with a machine ID for every run abandoned on cancellation
            status_interval: Seconds between status refreshes
            grace_period: Seconds a terminated child gets before it is killed
            console: Console for the status table
        """
        self.command_builder = command_builder
        self.store = store
        self.log_dir = Path(log_dir)
        self.teardown = teardown
        self.status_interval = status_interval
        self.grace_period = grace_period
        self.console = console or Console()
        self.logger = logging.getLogger(__name__)

        self.timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        self.attempts: Dict[str, RunAttempt] = self._build_attempts(machine_ids)

        self._outcomes: "queue.Queue" = queue.Queue()
        self._cancel = threading.Event()
        self.global_start: Optional[float] = None

    def _build_attempts(self, machine_ids: Iterable[int]) -> Dict[str, RunAttempt]:
        attempts: Dict[str, RunAttempt] = {}
        seen: Dict[int, int] = {}
        for machine_id in machine_ids:
            seen[machine_id] = seen.get(machine_id, 0) + 1
            n = seen[machine_id]
            key = str(machine_id) if n == 1 else f"{machine_id}#{n}"
            suffix = "" if n == 1 else f"_{n}"
            log_path = self.log_dir / f"quickmark_{machine_id}_{self.timestamp}{suffix}.log"
            attempts[key] = RunAttempt(key=key, target_id=machine_id, log_path=log_path)
        return attempts

    def launch(self):
        """Start every attempt's child process"""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        for attempt in self.attempts.values():
            self._launch_attempt(attempt)

    def _launch_attempt(self, attempt: RunAttempt):
        command = self.command_builder(attempt)
        self.logger.info(f"Starting machine {attempt.target_id}: {' '.join(command)} -> {attempt.log_path}")

        try:
            with open(attempt.log_path, 'ab') as log_file:
                process = subprocess.Popen(
                    command,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True
                )
        except OSError as e:
            self.logger.error(f"Could not start run for machine {attempt.target_id}: {e}")
            now = time.time()
            attempt.mark_running(None, now)
            attempt.error = str(e)
            attempt.mark_finished(127, now)
            return

        attempt.mark_running(process, time.time())
        waiter = threading.Thread(
            target=self._wait_for,
            args=(attempt.key, process),
            name=f"quickmark-wait-{attempt.key}",
            daemon=True
        )
        waiter.start()

    def _wait_for(self, key: str, process: subprocess.Popen):
        exit_code = process.wait()
        self._outcomes.put((key, exit_code, time.time()))

    def poll(self) -> int:
        """
        Apply every outcome reported since the last poll.

        Returns:
            Number of attempts that reached a terminal state
        """
        finished = 0
        while True:
            try:
                key, exit_code, ended_at = self._outcomes.get_nowait()
            except queue.Empty:
                return finished

            attempt = self.attempts[key]
            if attempt.is_terminal:
                continue

            if exit_code == 0:
                exit_code = self._merge_results(attempt)

            if attempt.mark_finished(exit_code, ended_at):
                finished += 1
                self.logger.info(f"Machine {attempt.target_id} finished: {attempt.status_text()}")

    def _merge_results(self, attempt: RunAttempt) -> int:
        """Copy the attempt's records into the shared store; returns the effective exit code"""
        try:
            records = ResultStore(str(attempt.result_path), self.logger).load()
            if not records:
                self.logger.warning(f"Machine {attempt.target_id} exited cleanly but stored no result")
                return 0
            self.store.extend(records)
            return 0
        except (CorruptStore, OSError) as e:
            self.logger.error(f"Could not merge results for machine {attempt.target_id}: {e}")
            attempt.error = str(e)
            return 1

    def cancel(self):
        """Request cancellation; safe to call from a signal handler"""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def counts(self) -> Dict[AttemptState, int]:
        counts = {state: 0 for state in AttemptState}
        for attempt in self.attempts.values():
            counts[attempt.state] += 1
        return counts

    def render(self, now: Optional[float] = None) -> Group:
        """Status view: header, progress line and one row per attempt"""
        now = now if now is not None else time.time()
        counts = self.counts()
        total = len(self.attempts)
        completed = counts[AttemptState.SUCCEEDED] + counts[AttemptState.FAILED]
        elapsed = now - self.global_start if self.global_start else 0

        header = Text.from_markup(
            f"[bold]=== QuickMark Parallel Runner ===[/bold]  {datetime.now().strftime('%H:%M:%S')}"
            f"  (elapsed: {format_duration(elapsed)})"
        )
        progress = Text.from_markup(
            f"Progress: {completed}/{total}  |  "
            f"[green]OK: {counts[AttemptState.SUCCEEDED]}[/green]  "
            f"[red]FAIL: {counts[AttemptState.FAILED]}[/red]  "
            f"[cyan]RUNNING: {counts[AttemptState.RUNNING]}[/cyan]"
        )

        table = Table(show_edge=False, header_style="bold")
        table.add_column("MACHINE", no_wrap=True)
        table.add_column("STATUS", no_wrap=True)
        table.add_column("TIME", no_wrap=True)
        table.add_column("LAST LOG LINE", overflow="ellipsis")

        for attempt in self.attempts.values():
            line = last_log_line(attempt.log_path) or "(waiting for output...)"
            table.add_row(
                attempt.key,
                Text(attempt.status_text(), style=STATE_STYLES[attempt.state]),
                format_duration(attempt.duration(now)),
                Text(line)
            )

        return Group(header, Text(""), progress, Text(""), table)

    def run(self) -> int:
        """
        Launch all attempts and monitor them.

        Returns:
            0 if every attempt succeeded, 1 if any failed or the run was cancelled
        """
        self.global_start = time.time()

        try:
            self.launch()

            self.console.print(f"Monitoring progress (refresh every {self.status_interval}s).")
            self.console.print("[yellow]Press Ctrl+C to stop and destroy all instances.[/yellow]")

            with Live(self.render(), console=self.console, auto_refresh=False) as live:
                while True:
                    self.poll()
                    live.update(self.render(), refresh=True)

                    if self.cancelled or all(a.is_terminal for a in self.attempts.values()):
                        break

                    self._cancel.wait(self.status_interval)
        except BaseException as e:
            self.logger.error(f"Monitor loop failed ({e!r}), stopping all runs")
            self._handle_cancellation()
            raise

        if self.cancelled:
            return self._handle_cancellation()

        self._display_final_summary()
        return 0 if all(a.state is AttemptState.SUCCEEDED for a in self.attempts.values()) else 1

    def _handle_cancellation(self) -> int:
        """Stop running children and tear down what they may have rented"""
        self.console.print("\n[yellow]Interrupted! Cleaning up...[/yellow]")

        running = [a for a in self.attempts.values() if a.state is AttemptState.RUNNING]

        for attempt in running:
            if attempt.process and attempt.process.poll() is None:
                self.console.print(f"  Stopping run for machine {attempt.target_id} (pid {attempt.process.pid})...")
                attempt.process.terminate()

        for attempt in running:
            exit_code = -1
            if attempt.process:
                try:
                    exit_code = attempt.process.wait(timeout=self.grace_period)
                except subprocess.TimeoutExpired:
                    attempt.process.kill()
                    exit_code = attempt.process.wait()
            attempt.mark_finished(exit_code, time.time())

        if self.teardown:
            self.console.print("\nDestroying Vast.ai instances...")
            for attempt in running:
                self.console.print(f"  Looking for instances for machine {attempt.target_id}...")
                try:
                    self.teardown(attempt.target_id)
                except Exception as e:
                    self.logger.warning(f"Teardown for machine {attempt.target_id} failed: {e}")
                    self.console.print(f"  [yellow]⚠ Teardown for machine {attempt.target_id} failed: {e}[/yellow]")

        self.console.print("\n[green]Cleanup complete.[/green]")
        return 1

    def _display_final_summary(self):
        counts = self.counts()
        total = len(self.attempts)
        elapsed = time.time() - self.global_start if self.global_start else 0

        self.console.print("\n[bold]=== COMPLETE ===[/bold]\n")
        self.console.print(f"Total time: {format_duration(elapsed)}")
        self.console.print(f"Success: [green]{counts[AttemptState.SUCCEEDED]}[/green] / {total}")
        self.console.print(f"Failed:  [red]{counts[AttemptState.FAILED]}[/red] / {total}")

        self.console.print("\nResults:")
        for attempt in self.attempts.values():
            if attempt.state is AttemptState.SUCCEEDED:
                self.console.print(f"  [green]✓[/green] Machine {attempt.key} - {attempt.log_path}")
            else:
                self.console.print(f"  [red]✗[/red] Machine {attempt.key} (exit {attempt.exit_code}) - {attempt.log_path}")

        self.console.print(f"\nLogs saved to: {self.log_dir}")
        self.console.print(f"Results file: {self.store.path}")

        if counts[AttemptState.FAILED]:
            self.console.print("\n[yellow]Some jobs failed. Check logs for details.[/yellow]")


def parse_arguments() -> argparse.Namespace:
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Run QuickMark benchmarks on multiple Vast.ai machines in parallel.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python parallel_runner.py 12345,67890,11223
  python parallel_runner.py 12345 67890 11223

Environment:
  STATUS_INTERVAL   Seconds between status refreshes (default: 5)
        """
    )
    parser.add_argument("machine_ids", nargs="*", help="Machine IDs, comma or space separated (prompted if omitted)")
    parser.add_argument("--mode", choices=["startup", "ssh"], default="startup", help="Execution mode passed to each run")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to configuration file (default: config.yaml)")
    parser.add_argument("--interval", type=float, help="Seconds between status refreshes (overrides STATUS_INTERVAL)")
    parser.add_argument("--log-dir", help="Directory for per-machine logs (default from config)")
    parser.add_argument("--results-file", help="Shared result store path (default from config)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    return parser.parse_args()


def main():
    """Main entry point"""
    load_dotenv()
    args = parse_arguments()

    config = load_config(args.config)
    setup_logging(
        args.log_level or config['logging'].get('level', 'INFO'),
        config['logging'].get('file', 'quickmark.log'),
        stream=False
    )

    if not validate_config(config):
        console.print("[red]ERROR:[/red] Invalid configuration or missing credentials")
        sys.exit(1)

    raw_ids = " ".join(args.machine_ids)
    if not raw_ids:
        raw_ids = console.input("Enter Vast.ai machine IDs (comma or space separated): ")

    try:
        machine_ids = parse_machine_ids(raw_ids)
    except ValueError as e:
        console.print(f"[red]ERROR:[/red] {e}")
        sys.exit(1)

    if not machine_ids:
        console.print("[red]ERROR:[/red] No machine IDs provided.")
        sys.exit(1)

    log_dir = Path(args.log_dir or config['parallel'].get('log_dir', 'quickmark_logs'))
    store = ResultStore(args.results_file or config['results']['file'])
    interval = args.interval or config['parallel'].get('status_interval', 5)
    label_prefix = config['vast'].get('label_prefix', 'quickmark-')

    def build_command(attempt: RunAttempt) -> List[str]:
        return [
            sys.executable, "-m", "quickmark_runner", str(attempt.target_id),
            "--mode", args.mode,
            "--config", args.config,
            "--results-file", str(attempt.result_path),
            "--raw-output", str(attempt.artifact(".raw_output.txt")),
            "--log-file", str(attempt.artifact(".runner.log")),
        ]

    vast_manager = VastManager(config['vast'], logging.getLogger(__name__))

    def teardown(machine_id: int):
        destroyed = vast_manager.destroy_instances_by_label(f"{label_prefix}{machine_id}")
        for instance_id in destroyed:
            console.print(f"  [red]Destroyed instance {instance_id} (machine {machine_id})[/red]")

    runner = ParallelRunner(
        machine_ids,
        build_command,
        store,
        log_dir,
        teardown=teardown,
        status_interval=interval
    )

    console.print("\n[bold]=== QuickMark Parallel Runner ===[/bold]\n")
    console.print(f"Launching {len(machine_ids)} benchmark(s)...")
    for attempt in runner.attempts.values():
        console.print(f"  Starting machine [cyan]{attempt.target_id}[/cyan] -> [dim]{attempt.log_path}[/dim]")

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda signum, frame: runner.cancel())

    sys.exit(runner.run())


if __name__ == "__main__":
    main()
