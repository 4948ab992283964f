# transport/connector.py
# Opens the management WebSocket, retrying forever with capped exponential backoff.

from __future__ import annotations

import sys
import threading
from typing import Any, Callable, Iterator, Optional

from websockets.exceptions import InvalidHandshake
from websockets.sync.client import connect as ws_connect

from .endpoint import Endpoint

# METRICS: attempts, failures by reason, chosen backoff
try:
    from observability.metrics import (
        connect_attempts_total, connect_failures_total, backoff_seconds,
    )
except Exception:  # metrics optional
    connect_attempts_total = connect_failures_total = backoff_seconds = None  # type: ignore

TAG = "[connector]"

INITIAL_BACKOFF_S = 1.0
MAX_BACKOFF_S = 30.0

AUTH_REJECTED = "auth_rejected"
AUTH_STATUS_CODES = (401, 403)

Dial = Callable[[Endpoint], Any]


class AuthRejected(Exception):
    """The server refused the bearer credential and the policy says not to retry."""


def _log(*a) -> None:
    print(TAG, *a, file=sys.stderr, flush=True)


def dial(endpoint: Endpoint) -> Any:
    """One handshake attempt. Returns a websockets.sync ClientConnection."""
    return ws_connect(
        endpoint.url(),
        ssl=endpoint.ssl_context(),
        additional_headers=endpoint.auth_headers(),
        open_timeout=endpoint.handshake_timeout_s,
    )


def backoff_delays(initial_s: float = INITIAL_BACKOFF_S,
                   max_s: float = MAX_BACKOFF_S) -> Iterator[float]:
    """1, 2, 4, ... capped at max_s: the k-th delay is min(initial * 2**(k-1), max)."""
    delay = initial_s
    while True:
        yield min(delay, max_s)
        delay = min(delay * 2, max_s)


def _status_code(exc: BaseException) -> Optional[int]:
    resp = getattr(exc, "response", None)
    code = getattr(resp, "status_code", None)
    if code is None:
        code = getattr(exc, "status_code", None)  # legacy InvalidStatusCode
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def classify_failure(exc: BaseException) -> str:
    """Label used in logs and metrics; only auth_rejected changes behaviour (and only if configured)."""
    if _status_code(exc) in AUTH_STATUS_CODES:
        return AUTH_REJECTED
    if isinstance(exc, ConnectionRefusedError):
        return "refused"
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, InvalidHandshake):
        return "handshake"
    return "other"


def connect_with_retry(
    endpoint: Endpoint,
    *,
    stop_evt: Optional[threading.Event] = None,
    dial: Dial = dial,
    initial_backoff_s: float = INITIAL_BACKOFF_S,
    max_backoff_s: float = MAX_BACKOFF_S,
    fatal_on_auth_reject: bool = False,
) -> Optional[Any]:
    """
    Block until a connection is open. Returns None if stop_evt is set while
    retrying. Every failure is retried, auth rejections included, unless
    fatal_on_auth_reject is set, in which case AuthRejected is raised.
    """
    stop_evt = stop_evt if stop_evt is not None else threading.Event()
    delays = backoff_delays(initial_backoff_s, max_backoff_s)
    attempt = 1

    while not stop_evt.is_set():
        _log(f"Attempting connection to {endpoint.url()} (attempt {attempt})...")
        if connect_attempts_total is not None:
            try: connect_attempts_total.inc()
            except Exception: pass

        try:
            conn = dial(endpoint)
        except Exception as e:
            reason = classify_failure(e)
            if connect_failures_total is not None:
                try: connect_failures_total.labels(reason=reason).inc()
                except Exception: pass
            if reason == AUTH_REJECTED and fatal_on_auth_reject:
                _log(f"Credential rejected by server (attempt {attempt}): {e}")
                raise AuthRejected(f"server rejected the bearer credential: {e}") from e

            delay = next(delays)
            _log(f"Connection failed (attempt {attempt}, {reason}): {e}")
            _log(f"Retrying in {delay:g}s...")
            if backoff_seconds is not None:
                try: backoff_seconds.observe(delay)
                except Exception: pass
            if stop_evt.wait(delay):
                break
            attempt += 1
            continue

        _log(f"Successfully connected to management server (attempt {attempt})")
        return conn

    _log("Connection attempts cancelled")
    return None
