# reaper/idle.py
# Idle guard: trips the reaper once the server has been up long enough AND empty long enough.

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional
import sys
import time

from rpc.errors import Fault
from rpc.protocol import Player
from .reaper import ActionFailed

# METRICS: clock gauges and failed polls
try:
    from observability.metrics import idle_seconds, players_online, poll_errors_total, uptime_seconds
except Exception:
    idle_seconds = players_online = poll_errors_total = uptime_seconds = None  # type: ignore

TAG = "[watcher]"

GetPlayers = Callable[[], List[Player]]
OnShutdown = Callable[[str], None]


class GuardState(str, Enum):
    POLLING = "POLLING"
    STOPPED = "STOPPED"


@dataclass
class TickResult:
    state: GuardState
    players: Optional[List[Player]] = None  # None when the poll failed or was skipped
    uptime_min: int = 0
    idle_min: int = 0
    fired: bool = False
    error: Optional[Exception] = None


def whole_minutes(seconds: float) -> int:
    return int(max(0.0, seconds) // 60)


def should_shutdown(uptime_s: float, idle_s: float, min_uptime_min: int, idle_timeout_min: int) -> bool:
    """Both conditions, compared in whole elapsed minutes."""
    return (whole_minutes(uptime_s) >= min_uptime_min
            and whole_minutes(idle_s) >= idle_timeout_min)


def fmt_duration(seconds: float) -> str:
    s = int(round(max(0.0, seconds)))
    h, rem = divmod(s, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}h{m}m{s}s"
    if m:
        return f"{m}m{s}s"
    return f"{s}s"


def _log(*a) -> None:
    print(TAG, *a, file=sys.stderr, flush=True)


def _gauge(g, value: float) -> None:
    if g is not None:
        try: g.set(value)
        except Exception: pass


@dataclass
class IdleShutdownGuard:
    """
    One step() per poll tick. Owns the two clocks:
      started_at    set once, when the guard is built
      last_seen_at  advanced (never backwards) whenever a poll returns players
    A failed poll leaves both clocks alone. In live mode a successful shutdown
    moves the guard to STOPPED and nothing fires again; in dry-run the guard
    stays POLLING and re-announces the would-be action every qualifying tick.
    """
    get_players: GetPlayers
    on_shutdown: OnShutdown

    min_uptime_min: int = 30
    idle_timeout_min: int = 10
    dry_run: bool = False

    now_fn: Callable[[], float] = time.monotonic

    started_at: float = field(init=False)
    last_seen_at: float = field(init=False)
    state: GuardState = field(init=False, default=GuardState.POLLING)
    shutdowns: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        now = self.now_fn()
        self.started_at = now
        self.last_seen_at = now

    def uptime_s(self, now: Optional[float] = None) -> float:
        return (self.now_fn() if now is None else now) - self.started_at

    def idle_s(self, now: Optional[float] = None) -> float:
        return (self.now_fn() if now is None else now) - self.last_seen_at

    def step(self) -> TickResult:
        if self.state is GuardState.STOPPED:
            return TickResult(state=self.state)

        try:
            players = self.get_players()
        except Fault as e:
            _log(f"Error getting players: {e}")
            if poll_errors_total is not None:
                try: poll_errors_total.labels(kind=e.kind).inc()
                except Exception: pass
            return TickResult(state=self.state, error=e)

        now = self.now_fn()
        if players:
            self.last_seen_at = max(self.last_seen_at, now)
            names = [p.name for p in players]
            _log(f"Players online ({len(players)}): {names}")
        else:
            _log(f"No players online (idle for {fmt_duration(self.idle_s(now))})")

        uptime_s = self.uptime_s(now)
        idle_s = self.idle_s(now)
        _gauge(players_online, len(players))
        _gauge(uptime_seconds, uptime_s)
        _gauge(idle_seconds, idle_s)

        result = TickResult(
            state=self.state,
            players=list(players),
            uptime_min=whole_minutes(uptime_s),
            idle_min=whole_minutes(idle_s),
        )
        _log(f"Status: uptime={result.uptime_min}m, idle={result.idle_min}m "
             f"(thresholds: min_uptime={self.min_uptime_min}m, idle_timeout={self.idle_timeout_min}m)")

        if not should_shutdown(uptime_s, idle_s, self.min_uptime_min, self.idle_timeout_min):
            return result

        _log(f"Shutdown conditions met: uptime={result.uptime_min}m >= {self.min_uptime_min}m "
             f"AND idle={result.idle_min}m >= {self.idle_timeout_min}m")
        try:
            self.on_shutdown(f"IDLE:shutdown_conditions_met uptime={result.uptime_min}m idle={result.idle_min}m")
        except ActionFailed as e:
            _log(f"Error shutting down server: {e}")
            result.error = e
            return result

        result.fired = True
        if not self.dry_run:
            self.shutdowns += 1
            self.state = GuardState.STOPPED
            result.state = self.state
        return result
