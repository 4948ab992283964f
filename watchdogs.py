# watchdogs.py
# Drives the idle guard: one poll per tick until shutdown, cancellation, or a lost connection.
import sys
import threading
import time
from enum import Enum
from typing import Callable

from reaper.idle import GuardState, IdleShutdownGuard
from rpc.errors import TransportLost

TAG = "[watcher]"


class LoopExit(str, Enum):
    CANCELLED = "CANCELLED"
    SHUTDOWN = "SHUTDOWN"
    TRANSPORT_LOST = "TRANSPORT_LOST"


class PollLoop:
    """
    Polls immediately, then every interval_s. Ticks never overlap: the next
    poll is not issued until the previous call has returned or failed.
    stop_evt is checked between ticks only; an in-flight call finishes first.
    """
    def __init__(
        self,
        guard: IdleShutdownGuard,
        *,
        interval_s: float,
        stop_evt: threading.Event,
        reconnect_on_loss: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.guard = guard
        self.interval_s = float(interval_s)
        self.stop_evt = stop_evt
        self.reconnect_on_loss = reconnect_on_loss
        self.clock = clock
        self.ticks = 0

    def run(self) -> LoopExit:
        print(TAG, "Starting player monitoring loop...", file=sys.stderr, flush=True)
        while not self.stop_evt.is_set():
            started = self.clock()
            res = self.guard.step()
            self.ticks += 1

            if res.state is GuardState.STOPPED:
                return LoopExit.SHUTDOWN
            if isinstance(res.error, TransportLost) and self.reconnect_on_loss:
                print(TAG, "Connection lost, leaving monitoring loop to reconnect", file=sys.stderr, flush=True)
                return LoopExit.TRANSPORT_LOST

            remaining = max(0.0, self.interval_s - (self.clock() - started))
            if self.stop_evt.wait(remaining):
                break

        print(TAG, "Monitoring stopped", file=sys.stderr, flush=True)
        return LoopExit.CANCELLED
