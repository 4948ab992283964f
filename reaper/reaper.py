# reaper/reaper.py
# The kill switch: runs the irreversible stop action once the idle guard decides it is time.

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence
import shlex
import subprocess
import sys

from rpc.protocol import METHOD_SERVER_STOP

# METRICS: count reaper triggers and action outcomes
try:
    from observability.metrics import reaper_trips_total, shutdown_attempts_total
except Exception:  # metrics optional
    reaper_trips_total = shutdown_attempts_total = None  # type: ignore

KillFn = Callable[[], None]

ACTION_SERVER_STOP = "server_stop"
ACTION_POWEROFF = "poweroff"
DEFAULT_POWEROFF_COMMAND = ("sudo", "shutdown", "-h", "now")


class ActionFailed(Exception):
    """The stop action ran and did not succeed; carries the underlying error text."""


@dataclass
class Reaper:
    kill: KillFn
    verb: str
    dry_run: bool = False

    def execute(self, reason: str = "") -> None:
        """Returns on success, raises ActionFailed otherwise. Dry-run always succeeds."""
        mode = "dry_run" if self.dry_run else "live"
        # Metrics
        if reaper_trips_total is not None:
            try:
                # first token only (e.g. "IDLE:shutdown_conditions_met") to keep label cardinality low
                reaper_trips_total.labels(reason=(reason.split() or ["unspecified"])[0]).inc()
            except Exception:
                pass

        if self.dry_run:
            print(f"[REAPER] TEST MODE: Would execute {self.verb} now ({reason})", file=sys.stderr, flush=True)
            _record("ok", mode)
            return

        print(f"[REAPER] Shutting down: {reason}", file=sys.stderr, flush=True)
        print(f"[REAPER] Executing {self.verb}...", file=sys.stderr, flush=True)
        try:
            self.kill()
        except ActionFailed:
            _record("failed", mode)
            raise
        except Exception as e:
            _record("failed", mode)
            raise ActionFailed(f"{self.verb} failed: {e}") from e
        _record("ok", mode)
        print(f"[REAPER] {self.verb} sent successfully", file=sys.stderr, flush=True)


def _record(outcome: str, mode: str) -> None:
    if shutdown_attempts_total is not None:
        try:
            shutdown_attempts_total.labels(outcome=outcome, mode=mode).inc()
        except Exception:
            pass

# --- ready-to-use kill strategies ---

def stop_server_via_rpc(get_client: Callable[[], Optional[Any]]) -> KillFn:
    # Ask the monitored server to stop itself over the live management connection
    def _kill() -> None:
        client = get_client()
        if client is None:
            raise ActionFailed("no live management connection")
        client.stop_server()
    return _kill

def power_off(command: Sequence[str] = DEFAULT_POWEROFF_COMMAND, *,
              run: Callable[..., Any] = subprocess.run, timeout_s: float = 60.0) -> KillFn:
    # Run the privileged host shutdown command; non-zero exit is a failure
    argv = list(command)
    def _kill() -> None:
        try:
            proc = run(argv, capture_output=True, text=True, timeout=timeout_s)
        except (OSError, subprocess.SubprocessError) as e:
            raise ActionFailed(f"{shlex.join(argv)}: {e}") from e
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            raise ActionFailed(f"{shlex.join(argv)} exited with status {proc.returncode}: {detail}")
    return _kill

def build_reaper(action: str, *, dry_run: bool,
                 get_client: Callable[[], Optional[Any]],
                 poweroff_command: Sequence[str] = DEFAULT_POWEROFF_COMMAND) -> Reaper:
    if action == ACTION_SERVER_STOP:
        return Reaper(kill=stop_server_via_rpc(get_client), verb=METHOD_SERVER_STOP, dry_run=dry_run)
    if action == ACTION_POWEROFF:
        return Reaper(kill=power_off(poweroff_command), verb=shlex.join(poweroff_command), dry_run=dry_run)
    raise ValueError(f"unknown shutdown action {action!r}")
