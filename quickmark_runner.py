#!/usr/bin/env python3
"""
QuickMark Runner for Vast.ai
Rents one Vast.ai machine, runs the SiliconMark QuickMark agent on it, records
the result in quickmark_results.json, and destroys the instance.

Two execution modes:
  startup  the agent runs inside the instance's onstart script; results are
           read back from the instance logs (no SSH needed)
  ssh      the onstart script only installs the agent; it is then run over SSH
"""

import os
import sys
import json
import shlex
import signal
import logging
import argparse
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from errors import QuickMarkError, BenchmarkFailure, BenchmarkTimeout, TeardownFailure
from result_extractor import extract_or_preserve
from result_store import ResultStore, BenchmarkRecord, normalize_result
from siliconmark_client import SiliconMarkClient
from ssh_helper import SSHConnection
from utils import setup_logging, load_config, validate_config, format_duration
from vast_manager import VastManager


console = Console()

MODES = ('startup', 'ssh')

SETUP_SCRIPT = """#!/bin/bash
set -ex
echo "=== QuickMark Setup Starting ==="

apt-get update
apt-get install -y libgpgme11 wget

pip3 install pynvml || true
pip3 install torch || true

cd /workspace
wget -q -O ./agent {agent_url}
chmod +x ./agent
"""

SSH_SCRIPT_TAIL = """
echo "=== Setup Complete, Agent Ready ==="
"""

STARTUP_SCRIPT_TAIL = """
echo "=== Setup Complete, Running Benchmark ==="

./agent -api-key {job_token} 2>&1

echo "=== {completion_marker} ==="
"""


def build_onstart_script(agent_url: str, job_token: Optional[str] = None,
                         completion_marker: str = "QUICKMARK_BENCHMARK_COMPLETE") -> str:
    """
    Build the instance onstart script.

    With a job token the script also runs the agent and prints the completion
    marker afterwards; without one it stops once the agent is installed.
    """
    script = SETUP_SCRIPT.format(agent_url=shlex.quote(agent_url))
    if job_token is None:
        return script + SSH_SCRIPT_TAIL
    return script + STARTUP_SCRIPT_TAIL.format(
        job_token=shlex.quote(job_token),
        completion_marker=completion_marker
    )


class QuickMarkRunner:
    """Runs one provision-benchmark-teardown cycle for a single machine"""

    def __init__(
        self,
        machine_id: int,
        config: Dict[str, Any],
        mode: str = "startup",
        results_file: Optional[str] = None,
        raw_output_path: Optional[str] = None,
        vast_manager: Optional[VastManager] = None,
        siliconmark_client: Optional[SiliconMarkClient] = None
    ):
        """
        Initialize the runner.

        Args:
            machine_id: Vast.ai machine ID to benchmark
            config: Full configuration dictionary
            mode: "startup" or "ssh"
            results_file: Result store path (default from config)
            raw_output_path: Where unparseable agent output is saved (default from config)
            vast_manager: Pre-built VastManager
            siliconmark_client: Pre-built SiliconMarkClient
        """
        if mode not in MODES:
            raise ValueError(f"Unknown mode: {mode}")

        self.machine_id = machine_id
        self.config = config
        self.mode = mode
        self.logger = logging.getLogger(__name__)

        self.vast_config = config['vast']
        self.extraction = config['extraction']

        self.store = ResultStore(results_file or config['results']['file'], self.logger)
        self.raw_output_path = Path(raw_output_path or config['results']['raw_output'])

        self.vast_manager = vast_manager or VastManager(self.vast_config, self.logger)
        self.siliconmark = siliconmark_client or SiliconMarkClient(config['siliconmark'], self.logger)

        # Runtime state
        self.instance_id: Optional[int] = None
        self.offer: Dict[str, Any] = {}
        self.job = None
        self.record: Optional[BenchmarkRecord] = None

    @property
    def label(self) -> str:
        return f"{self.vast_config.get('label_prefix', 'quickmark-')}{self.machine_id}"

    def run(self) -> bool:
        """
        Execute the full cycle.

        Returns:
            bool: True if a record was stored
        """
        start_time = datetime.now()

        try:
            self._find_offer()
            self._create_job()
            self._create_instance()
            self._wait_until_ready()

            if self.mode == 'startup':
                output = self._run_benchmark_startup()
            else:
                output = self._run_benchmark_ssh()

            document = self._parse_results(output)
            self._save_record(document)

            self._display_final_summary((datetime.now() - start_time).total_seconds())
            return True

        except KeyboardInterrupt:
            console.print("\n[bold red]✗ Benchmark interrupted by user[/bold red]")
            return False
        except QuickMarkError as e:
            self.logger.error(f"Benchmark for machine {self.machine_id} failed: {e}")
            console.print(f"\n[bold red]✗ {e}[/bold red]")
            return False
        finally:
            self._cleanup()

    def _step(self, title: str):
        console.print(Panel(f"[cyan]{title}[/cyan]", border_style="cyan"))

    def _find_offer(self):
        """Step 1: locate a rentable offer on the machine"""
        self._step(f"Finding Offer for Machine {self.machine_id}")

        self.offer = self.vast_manager.find_offer(self.machine_id)

        console.print("[green]✓[/green] Found offer:")
        console.print(f"  [cyan]Offer ID:[/cyan]     {self.offer.get('id')}")
        console.print(f"  [cyan]GPU:[/cyan]          {self.offer.get('num_gpus', 1)} x {self.offer.get('gpu_name', 'Unknown GPU')}")
        console.print(f"  [cyan]DLPerf:[/cyan]       {self.offer.get('dlperf', 0)}")
        console.print(f"  [cyan]Price:[/cyan]        ${self.offer.get('dph_total', 0)}/hr")
        console.print(f"  [cyan]Location:[/cyan]     {self.offer.get('geolocation', 'Unknown')}")
        console.print(f"  [cyan]Host ID:[/cyan]      {self.offer.get('host_id', '')}")

    def _create_job(self):
        """Step 2: log in and create a SiliconMark job"""
        self._step("Creating SiliconMark Job")

        job_name = f"quickmark-machine-{self.machine_id}-{datetime.now().strftime('%Y%m%d-%H%M%S')}"
        gpu_name = self.offer.get('gpu_name', 'Unknown GPU')

        self.siliconmark.login(os.getenv('SD_EMAIL', ''), os.getenv('SD_PASSWORD', ''))
        self.job = self.siliconmark.create_job(
            job_name,
            f"QuickMark benchmark for Vast.ai machine {self.machine_id} ({gpu_name})"
        )

        console.print("[green]✓[/green] SiliconMark job created")
        console.print(f"  [cyan]Job ID:[/cyan]    {self.job.job_id}")
        console.print(f"  [cyan]API Key:[/cyan]   {self.job.token[:40]}...")

    def _create_instance(self):
        """Step 3: rent the instance with the mode's onstart script"""
        self._step("Creating Vast.ai Instance")

        agent_url = self.config['siliconmark']['agent_url']
        if self.mode == 'startup':
            script = build_onstart_script(agent_url, self.job.token, self.extraction['completion_marker'])
        else:
            script = build_onstart_script(agent_url)

        self.instance_id = self.vast_manager.create_instance(self.offer['id'], script, self.label)
        console.print(f"[green]✓[/green] Instance created: {self.instance_id}")

    def _wait_until_ready(self):
        """Step 4: wait for the instance to reach the running state"""
        self._step("Waiting for Instance to be Ready")

        def show_status(status: str, waited: int):
            console.print(f"  Status: [yellow]{status}[/yellow] (waited {waited}s)")

        try:
            self.vast_manager.wait_for_running(
                self.instance_id,
                timeout=self.vast_config.get('ready_timeout', 300),
                poll_interval=self.vast_config.get('ready_poll_interval', 10),
                on_status=show_status
            )
        except BenchmarkFailure:
            self._print_log_tail(50)
            raise

        console.print("[green]✓[/green] Instance is running!")

    def _show_log_line(self, line: str, waited: int):
        if line:
            console.print(f"  [{waited}s] {line[:80]}", markup=False, highlight=False)
        else:
            console.print(f"  [yellow]Waiting for logs... ({waited}s)[/yellow]")

    def _run_benchmark_startup(self) -> str:
        """Step 5 (startup mode): poll instance logs for the completion marker"""
        self._step("Waiting for Benchmark to Complete")

        marker = self.extraction['completion_marker']
        timeout = self.vast_config.get('benchmark_timeout', 900)
        console.print(f"Monitoring logs for '{marker}' (typically 5-10 minutes)...")

        logs = self.vast_manager.wait_for_log_marker(
            self.instance_id,
            marker,
            timeout=timeout,
            poll_interval=self.vast_config.get('benchmark_poll_interval', 10),
            on_poll=self._show_log_line
        )

        if logs is None:
            self._print_log_tail(100)
            raise BenchmarkTimeout(self.instance_id, timeout)

        console.print("[green]✓[/green] Benchmark completed!")
        return logs

    def _run_benchmark_ssh(self) -> str:
        """Step 5 (ssh mode): wait for setup, then run the agent over SSH"""
        self._step("Running SiliconMark QuickMark Benchmark over SSH")

        setup_marker = self.extraction['setup_marker']
        console.print(f"Monitoring logs for '{setup_marker}'...")
        logs = self.vast_manager.wait_for_log_marker(
            self.instance_id,
            setup_marker,
            timeout=self.vast_config.get('setup_timeout', 300),
            poll_interval=self.vast_config.get('setup_poll_interval', 5),
            on_poll=self._show_log_line
        )
        if logs is None:
            self._print_log_tail(50)
            console.print("[yellow]⚠ Timeout waiting for setup - proceeding anyway[/yellow]")

        ssh_host, ssh_port = self.vast_manager.get_ssh_details(self.instance_id)
        console.print(f"[green]✓[/green] SSH connection: root@{ssh_host}:{ssh_port}")

        ssh = SSHConnection(host=ssh_host, port=ssh_port, logger=self.logger)
        if not ssh.connect():
            raise BenchmarkFailure(f"Could not connect to root@{ssh_host}:{ssh_port}")

        try:
            success, _, _, _ = ssh.execute_command("ls -la /workspace/agent", timeout=30)
            if not success:
                console.print("[yellow]⚠ Agent not found, downloading...[/yellow]")
                agent_url = shlex.quote(self.config['siliconmark']['agent_url'])
                ssh.execute_command(f"cd /workspace && wget -q -O ./agent {agent_url} && chmod +x ./agent")

            timeout = self.vast_config.get('benchmark_timeout', 900)
            console.print("Executing SiliconMark agent (typically 2-5 minutes)...")
            try:
                exit_code, output = ssh.stream_command(
                    f"cd /workspace && ./agent -api-key {shlex.quote(self.job.token)} 2>&1",
                    timeout=timeout,
                    on_line=lambda line: console.print(f"[dim]│[/dim] {line}", highlight=False)
                )
            except TimeoutError as e:
                raise BenchmarkTimeout(self.instance_id, timeout) from e
            except OSError as e:
                raise BenchmarkFailure(f"SSH session to root@{ssh_host}:{ssh_port} failed: {e}") from e
        finally:
            ssh.close()

        if exit_code != 0:
            raise BenchmarkFailure(f"Benchmark execution failed with exit code {exit_code}")

        console.print("[green]✓[/green] Benchmark completed!")
        return output

    def _parse_results(self, output: str) -> Dict[str, Any]:
        """Step 6: pull the result object out of the agent output"""
        self._step("Parsing and Saving Results")

        # SSH output ends with the agent itself; only startup logs carry the marker
        end_marker = self.extraction['completion_marker'] if self.mode == 'startup' else None

        document = extract_or_preserve(
            output,
            str(self.raw_output_path),
            result_key=self.extraction['result_key'],
            end_marker=end_marker,
            lookahead=self.extraction.get('lookahead_lines', 3),
            allow_fallback=self.extraction.get('allow_unmarked_fallback', False)
        )

        result_path = self.raw_output_path.parent / f"siliconmark_output_{self.machine_id}.json"
        result_path.parent.mkdir(parents=True, exist_ok=True)
        result_path.write_text(json.dumps(document, indent=2))
        console.print(f"Raw result saved to {result_path}")
        return document

    def _save_record(self, document: Dict[str, Any]):
        """Step 7: normalize and append to the result store"""
        self.record = normalize_result(
            document,
            machine_id=self.machine_id,
            host_id=self.offer.get('host_id'),
            dlperf=self.offer.get('dlperf', 0),
            job_id=self.job.job_id,
            notes=f"Automated benchmark via quickmark_runner.py ({self.mode} mode)",
            score_metric=self.config['results'].get('score_metric', 'bf16_tflops')
        )

        self._display_results(self.record)
        self.store.append(self.record)
        console.print(f"[green]✓[/green] Results appended to {self.store.path}")

    def _display_results(self, record: BenchmarkRecord):
        agg = record.aggregate_results

        table = Table(title=f"Benchmark Results: {record.gpu_model} (x{record.gpu_count})")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="yellow", justify="right")
        table.add_row("BF16 TFLOPS", str(agg['bf16_tflops']))
        table.add_row("FP16 TFLOPS", str(agg['fp16_tflops']))
        table.add_row("FP32 TFLOPS", str(agg['fp32_tflops']))
        table.add_row("Mixed Precision TFLOPS", str(agg['mixed_precision_tflops']))
        table.add_row("Memory BW (GB/s)", str(agg['memory_bandwidth_gbs']))
        table.add_row("Power (W)", str(agg['power_consumption_watts']))
        table.add_row("Temperature (°C)", str(agg['temperature_centigrade']))

        console.print(table)

    def _print_log_tail(self, lines: int):
        if self.instance_id is None:
            return
        logs = self.vast_manager.get_instance_logs(self.instance_id, tail=lines)
        if logs:
            console.print("[dim]Recent instance logs:[/dim]")
            console.print(logs, markup=False, highlight=False)

    def _display_final_summary(self, elapsed: float):
        record = self.record
        console.print("\n[bold green]Summary:[/bold green]")
        console.print(f"  Machine ID:      {self.machine_id}")
        console.print(f"  GPU:             {record.gpu_model}")
        console.print(f"  QuickMark Score: [green]{record.score}[/green] {record.score_metric}")
        console.print(f"  DLPerf:          {record.dlperf_at_benchmark}")
        console.print(f"  Total time:      {format_duration(elapsed)}")
        console.print(f"  Results saved:   {self.store.path}")

    def _cleanup(self):
        """Destroy the instance; failures only warn"""
        if self.instance_id is None:
            return

        console.print(f"\n[bold]Cleanup: destroying instance {self.instance_id}[/bold]")
        try:
            self.vast_manager.destroy_instance(self.instance_id)
            console.print("[green]✓[/green] Instance destroyed")
        except TeardownFailure as e:
            self.logger.warning(str(e))
            console.print("[yellow]⚠ Failed to destroy instance automatically. Please destroy manually![/yellow]")
            console.print(f"[yellow]  Run: vast destroy instance {self.instance_id}[/yellow]")
        self.instance_id = None


def _handle_sigterm(signum, frame):
    # Unwind through run()'s finally so the instance is destroyed
    sys.exit(128 + signum)


def parse_arguments() -> argparse.Namespace:
    """Parse command-line arguments"""
    parser = argparse.ArgumentParser(
        description="Run the SiliconMark QuickMark benchmark on a Vast.ai machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Benchmark machine 12345 (agent runs in the onstart script)
  python quickmark_runner.py 12345

  # Run the agent over SSH instead
  python quickmark_runner.py 12345 --mode ssh

Environment:
  SD_EMAIL, SD_PASSWORD   SiliconData credentials
  VAST_API_KEY            Vast.ai API key (or ~/.vast_api_key)
        """
    )

    parser.add_argument("machine_id", nargs="?", help="Vast.ai machine ID (prompted if omitted)")
    parser.add_argument("--mode", choices=MODES, default="startup",
                        help="Where the agent runs: 'startup' (onstart script) or 'ssh'. Default: startup")
    parser.add_argument("-c", "--config", default="config.yaml",
                        help="Path to configuration file (default: config.yaml)")
    parser.add_argument("--results-file", help="Result store path (default from config)")
    parser.add_argument("--raw-output", help="Where unparseable agent output is saved (default from config)")
    parser.add_argument("--log-file", help="Log file path (default from config)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")

    return parser.parse_args()


def main():
    """Main entry point"""
    load_dotenv()
    args = parse_arguments()

    config = load_config(args.config)
    setup_logging(
        args.log_level or config['logging'].get('level', 'INFO'),
        args.log_file or config['logging'].get('file', 'quickmark.log')
    )

    if not validate_config(config):
        console.print("[red]Error: Invalid configuration or missing credentials[/red]")
        sys.exit(1)

    raw_id = args.machine_id
    if raw_id is None:
        raw_id = console.input("[yellow]Enter the Vast.ai machine ID to benchmark:[/yellow] ").strip()

    if not raw_id or not raw_id.isascii() or not raw_id.isdigit():
        console.print(f"[red]Error: Invalid machine ID: '{raw_id}'. Must be a number.[/red]")
        sys.exit(1)

    signal.signal(signal.SIGTERM, _handle_sigterm)

    try:
        runner = QuickMarkRunner(
            int(raw_id),
            config,
            mode=args.mode,
            results_file=args.results_file,
            raw_output_path=args.raw_output
        )
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    success = runner.run()
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
