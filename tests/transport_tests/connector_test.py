# tests/transport_tests/connector_test.py
import itertools
import ssl
from types import SimpleNamespace

import pytest
from websockets.exceptions import InvalidHandshake

import transport.connector as conn_mod
from transport.connector import (
    AuthRejected, backoff_delays, classify_failure, connect_with_retry, dial,
)
from transport.endpoint import Endpoint

# --------- helpers ----------
class FakeStop:
    """Stands in for threading.Event: records every backoff wait instead of sleeping."""
    def __init__(self, cancel_after=None):
        self.waits = []
        self._set = False
        self.cancel_after = cancel_after
    def is_set(self): return self._set
    def set(self): self._set = True
    def wait(self, timeout=None):
        self.waits.append(timeout)
        if self.cancel_after is not None and len(self.waits) >= self.cancel_after:
            self._set = True
        return self._set

class StatusError(Exception):
    """Shaped like websockets' InvalidStatus: carries response.status_code."""
    def __init__(self, code):
        super().__init__(f"server rejected WebSocket connection: HTTP {code}")
        self.response = SimpleNamespace(status_code=code)

class FlakyDialer:
    def __init__(self, failures, exc_factory=lambda: ConnectionRefusedError("refused")):
        self.failures = failures
        self.exc_factory = exc_factory
        self.calls = 0
        self.conn = object()
    def __call__(self, endpoint):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return self.conn

EP = Endpoint(host="mc.local", port=25566, secret="s3cret")

# --------- backoff ----------

def test_backoff_sequence_doubles_and_caps():
    got = list(itertools.islice(backoff_delays(1.0, 30.0), 8))
    assert got == [1, 2, 4, 8, 16, 30, 30, 30]

@pytest.mark.parametrize("k", range(1, 12))
def test_kth_delay_matches_closed_form(k):
    got = list(itertools.islice(backoff_delays(), k))[-1]
    assert got == min(1 * 2 ** (k - 1), 30)

# --------- retry loop ----------

def test_two_refusals_then_success_sleeps_1_then_2(capsys):
    stop = FakeStop()
    dialer = FlakyDialer(failures=2)
    conn = connect_with_retry(EP, stop_evt=stop, dial=dialer)

    assert conn is dialer.conn
    assert dialer.calls == 3
    assert stop.waits == [1, 2]
    err = capsys.readouterr().err
    assert "(attempt 1)" in err and "(attempt 3)" in err
    assert "Retrying in 1s" in err and "Retrying in 2s" in err
    assert "Successfully connected" in err

def test_long_outage_caps_backoff_at_30s():
    stop = FakeStop()
    dialer = FlakyDialer(failures=8)
    connect_with_retry(EP, stop_evt=stop, dial=dialer)
    assert stop.waits == [1, 2, 4, 8, 16, 30, 30, 30]

def test_immediate_success_never_sleeps():
    stop = FakeStop()
    assert connect_with_retry(EP, stop_evt=stop, dial=FlakyDialer(failures=0)) is not None
    assert stop.waits == []

def test_cancellation_during_backoff_returns_none(capsys):
    stop = FakeStop(cancel_after=3)
    dialer = FlakyDialer(failures=100)
    assert connect_with_retry(EP, stop_evt=stop, dial=dialer) is None
    assert dialer.calls == 3
    assert "cancelled" in capsys.readouterr().err

def test_already_cancelled_never_dials():
    stop = FakeStop(); stop.set()
    dialer = FlakyDialer(failures=0)
    assert connect_with_retry(EP, stop_evt=stop, dial=dialer) is None
    assert dialer.calls == 0

def test_auth_rejection_is_retried_by_default():
    stop = FakeStop()
    dialer = FlakyDialer(failures=2, exc_factory=lambda: StatusError(401))
    assert connect_with_retry(EP, stop_evt=stop, dial=dialer) is dialer.conn
    assert stop.waits == [1, 2]

def test_auth_rejection_can_be_fatal():
    stop = FakeStop()
    dialer = FlakyDialer(failures=5, exc_factory=lambda: StatusError(403))
    with pytest.raises(AuthRejected):
        connect_with_retry(EP, stop_evt=stop, dial=dialer, fatal_on_auth_reject=True)
    assert dialer.calls == 1
    assert stop.waits == []

def test_fatal_auth_policy_still_retries_other_failures():
    stop = FakeStop()
    dialer = FlakyDialer(failures=1, exc_factory=lambda: StatusError(502))
    assert connect_with_retry(EP, stop_evt=stop, dial=dialer, fatal_on_auth_reject=True) is dialer.conn

def test_failure_metrics_labelled_by_reason(monkeypatch):
    class FakeCounter:
        def __init__(self): self.calls = []; self.count = 0
        def labels(self, **kw): self.calls.append(kw); return self
        def inc(self, n=1.0): self.count += n
    attempts, failures = FakeCounter(), FakeCounter()
    monkeypatch.setattr(conn_mod, "connect_attempts_total", attempts, raising=True)
    monkeypatch.setattr(conn_mod, "connect_failures_total", failures, raising=True)

    connect_with_retry(EP, stop_evt=FakeStop(), dial=FlakyDialer(failures=2))
    assert attempts.count == 3
    assert failures.calls == [{"reason": "refused"}, {"reason": "refused"}]

# --------- classification ----------

@pytest.mark.parametrize("exc,reason", [
    (StatusError(401), "auth_rejected"),
    (StatusError(403), "auth_rejected"),
    (StatusError(500), "other"),
    (ConnectionRefusedError("nope"), "refused"),
    (TimeoutError("slow"), "timeout"),
    (InvalidHandshake("bad upgrade"), "handshake"),
    (OSError("no route"), "other"),
])
def test_classify_failure(exc, reason):
    assert classify_failure(exc) == reason

# --------- dial ----------

def test_dial_passes_url_bearer_tls_and_timeout(monkeypatch):
    seen = {}
    def fake_connect(uri, **kw):
        seen["uri"] = uri
        seen.update(kw)
        return "conn"
    monkeypatch.setattr(conn_mod, "ws_connect", fake_connect, raising=True)

    assert dial(EP) == "conn"
    assert seen["uri"] == "wss://mc.local:25566/"
    assert seen["additional_headers"] == {"Authorization": "Bearer s3cret"}
    assert isinstance(seen["ssl"], ssl.SSLContext)
    assert seen["open_timeout"] == 10.0

def test_dial_plain_ws_has_no_ssl(monkeypatch):
    seen = {}
    monkeypatch.setattr(conn_mod, "ws_connect", lambda uri, **kw: seen.update(kw, uri=uri), raising=True)
    dial(Endpoint(host="h", port=1, secret="s", tls=False))
    assert seen["uri"] == "ws://h:1/"
    assert seen["ssl"] is None
