# lifecycle/controller.py
# Wires connector -> RPC client -> idle guard -> reaper, and owns cancellation.

from __future__ import annotations

import signal
import sys
import threading
import time
from typing import Any, Callable, Dict, Optional, Sequence

from reaper.idle import IdleShutdownGuard
from reaper.reaper import build_reaper
from rpc.correlator import RpcClient
from rpc.errors import TransportLost
from transport import connector
from transport.connector import AuthRejected, connect_with_retry
from watchdogs import LoopExit, PollLoop

from .config import ConfigError, WatcherConfig

# METRICS: connection gauge + reconnects
try:
    from observability import metrics
except Exception:  # metrics optional
    metrics = None  # type: ignore

TAG = "[watcher]"
EXIT_OK = 0
EXIT_FATAL = 1

ClientFactory = Callable[..., RpcClient]


def _log(*a) -> None:
    print(TAG, *a, file=sys.stderr, flush=True)


def install_signal_handlers(
    stop_evt: threading.Event,
    signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM),
) -> Dict[int, Any]:
    """Turn SIGINT/SIGTERM into stop_evt.set(). Returns the previous handlers."""
    def _handle(signum, _frame):
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        _log(f"Received signal {name}, shutting down gracefully...")
        stop_evt.set()

    previous: Dict[int, Any] = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, _handle)
    return previous


class Controller:
    """
    One run of the watcher. The idle guard (and so both clocks) is created on
    the first successful connection and survives reconnects; each connection
    gets a fresh RpcClient, so request ids restart at 1.
    """

    def __init__(
        self,
        cfg: WatcherConfig,
        *,
        stop_evt: Optional[threading.Event] = None,
        dial: connector.Dial = connector.dial,
        client_factory: ClientFactory = RpcClient,
        now_fn: Callable[[], float] = time.monotonic,
        initial_backoff_s: float = connector.INITIAL_BACKOFF_S,
        max_backoff_s: float = connector.MAX_BACKOFF_S,
    ) -> None:
        self.cfg = cfg
        self.stop_evt = stop_evt if stop_evt is not None else threading.Event()
        self.dial = dial
        self.client_factory = client_factory
        self.now_fn = now_fn
        self.initial_backoff_s = initial_backoff_s
        self.max_backoff_s = max_backoff_s

        self.client: Optional[RpcClient] = None
        self.guard: Optional[IdleShutdownGuard] = None
        self.connections = 0
        self.reaper = build_reaper(
            cfg.shutdown_action,
            dry_run=cfg.test_mode,
            get_client=lambda: self.client,
            poweroff_command=cfg.poweroff_command,
        )

    # ----- providers handed to the guard -----

    def _list_players(self):
        client = self.client
        if client is None:
            raise TransportLost("not connected")
        return client.list_players()

    def _build_guard(self) -> IdleShutdownGuard:
        return IdleShutdownGuard(
            get_players=self._list_players,
            on_shutdown=self.reaper.execute,
            min_uptime_min=self.cfg.min_uptime_min,
            idle_timeout_min=self.cfg.idle_timeout_min,
            dry_run=self.cfg.test_mode,
            now_fn=self.now_fn,
        )

    # ----- connection -----

    def _connect(self) -> bool:
        conn = connect_with_retry(
            self.cfg.endpoint,
            stop_evt=self.stop_evt,
            dial=self.dial,
            initial_backoff_s=self.initial_backoff_s,
            max_backoff_s=self.max_backoff_s,
            fatal_on_auth_reject=self.cfg.auth_failure_fatal,
        )
        if conn is None:
            return False
        self.client = self.client_factory(conn, timeout_s=self.cfg.rpc_timeout_s)
        self.connections += 1
        if metrics is not None:
            try: metrics.connected.set(1)
            except Exception: pass
        return True

    def _close_client(self) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        _log("Closing connection to Minecraft server...")
        client.close()
        if metrics is not None:
            try: metrics.connected.set(0)
            except Exception: pass

    # ----- run -----

    def run(self) -> int:
        try:
            while not self.stop_evt.is_set():
                if not self._connect():
                    break
                if self.guard is None:
                    self.guard = self._build_guard()
                    _log("minecraft-watcher ready - connected to server")

                loop = PollLoop(
                    self.guard,
                    interval_s=self.cfg.poll_interval_s,
                    stop_evt=self.stop_evt,
                    reconnect_on_loss=self.cfg.reconnect_on_loss,
                    clock=self.now_fn,
                )
                outcome = loop.run()

                if outcome is LoopExit.SHUTDOWN:
                    _log("Server shutdown initiated. Exiting.")
                    return EXIT_OK
                if outcome is LoopExit.TRANSPORT_LOST:
                    self._close_client()
                    if metrics is not None:
                        try: metrics.reconnects_total.inc()
                        except Exception: pass
                    _log("Reconnecting to Minecraft server...")
                    continue
                break
            return EXIT_OK
        except AuthRejected as e:
            _log(f"Fatal: {e}")
            return EXIT_FATAL
        finally:
            self._close_client()
            _log("Shutdown complete")


def main() -> int:
    _log("minecraft-watcher starting...")
    try:
        cfg = WatcherConfig.from_env()
    except ConfigError as e:
        _log(f"Configuration error: {e}")
        return EXIT_FATAL

    if cfg.test_mode:
        _log("*** RUNNING IN TEST MODE - will not actually shut down server ***")
    _log(f"Configuration: {cfg.describe()}")

    if cfg.metrics_port and metrics is not None:
        metrics.serve_metrics(port=cfg.metrics_port)
        _log(f"Prometheus exporter on http://127.0.0.1:{cfg.metrics_port}/metrics")

    stop_evt = threading.Event()
    install_signal_handlers(stop_evt)
    return Controller(cfg, stop_evt=stop_evt).run()
