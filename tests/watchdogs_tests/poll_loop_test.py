# tests/watchdogs_tests/poll_loop_test.py
from reaper.idle import GuardState, IdleShutdownGuard, TickResult
from rpc.errors import CallTimeout, ProtocolFault, TransportLost
from watchdogs import LoopExit, PollLoop

# --------- helpers ----------
class FakeClock:
    def __init__(self, t=0.0): self.t = t
    def now(self): return self.t
    def step(self, dt): self.t += dt

class FakeStop:
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

class ScriptedGuard:
    """Returns queued TickResults; repeats the last one when the script runs out."""
    def __init__(self, results, clk=None, cost_s=0.0):
        self.results = list(results)
        self.steps = 0
        self.clk = clk
        self.cost_s = cost_s
    def step(self):
        self.steps += 1
        if self.clk is not None:
            self.clk.step(self.cost_s)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]

POLLING = TickResult(state=GuardState.POLLING, players=[])
STOPPED = TickResult(state=GuardState.STOPPED, fired=True)

# --------- tests ----------

def test_polls_immediately_then_every_interval(capsys):
    clk = FakeClock()
    stop = FakeStop(cancel_after=3)
    guard = ScriptedGuard([POLLING], clk=clk, cost_s=0.5)
    loop = PollLoop(guard, interval_s=10, stop_evt=stop, clock=clk.now)

    assert loop.run() is LoopExit.CANCELLED
    assert guard.steps == 3
    # each wait is the rest of the period after the poll itself took 0.5s
    assert stop.waits == [9.5, 9.5, 9.5]
    err = capsys.readouterr().err
    assert "Starting player monitoring loop..." in err
    assert "Monitoring stopped" in err

def test_slow_poll_does_not_produce_negative_wait():
    clk = FakeClock()
    stop = FakeStop(cancel_after=1)
    guard = ScriptedGuard([POLLING], clk=clk, cost_s=45)
    PollLoop(guard, interval_s=30, stop_evt=stop, clock=clk.now).run()
    assert stop.waits == [0.0]

def test_cancelled_before_start_never_polls():
    stop = FakeStop(); stop.set()
    guard = ScriptedGuard([POLLING])
    assert PollLoop(guard, interval_s=1, stop_evt=stop).run() is LoopExit.CANCELLED
    assert guard.steps == 0

def test_stopped_guard_ends_loop_with_shutdown():
    stop = FakeStop()
    guard = ScriptedGuard([POLLING, POLLING, STOPPED])
    loop = PollLoop(guard, interval_s=1, stop_evt=stop)
    assert loop.run() is LoopExit.SHUTDOWN
    assert loop.ticks == 3
    assert len(stop.waits) == 2

def test_transport_lost_leaves_loop_when_reconnect_enabled():
    stop = FakeStop()
    lost = TickResult(state=GuardState.POLLING, error=TransportLost("connection lost"))
    guard = ScriptedGuard([POLLING, lost])
    assert PollLoop(guard, interval_s=1, stop_evt=stop).run() is LoopExit.TRANSPORT_LOST
    assert guard.steps == 2

def test_timeouts_count_as_transport_lost():
    timeout = TickResult(state=GuardState.POLLING, error=CallTimeout("no response"))
    guard = ScriptedGuard([timeout])
    assert PollLoop(guard, interval_s=1, stop_evt=FakeStop()).run() is LoopExit.TRANSPORT_LOST

def test_transport_lost_keeps_ticking_when_reconnect_disabled():
    stop = FakeStop(cancel_after=4)
    lost = TickResult(state=GuardState.POLLING, error=TransportLost("connection lost"))
    guard = ScriptedGuard([lost])
    loop = PollLoop(guard, interval_s=1, stop_evt=stop, reconnect_on_loss=False)
    assert loop.run() is LoopExit.CANCELLED
    assert guard.steps == 4

def test_protocol_fault_keeps_polling():
    stop = FakeStop(cancel_after=3)
    fault = TickResult(state=GuardState.POLLING, error=ProtocolFault(-32603, "Internal error"))
    guard = ScriptedGuard([fault])
    assert PollLoop(guard, interval_s=1, stop_evt=stop).run() is LoopExit.CANCELLED
    assert guard.steps == 3

def test_dry_run_guard_runs_until_cancelled():
    """Predicate true on every tick, but a dry run never ends the loop on its own."""
    clk = FakeClock()
    stop = FakeStop(cancel_after=20)
    fired = []
    guard = IdleShutdownGuard(
        get_players=lambda: [], on_shutdown=fired.append,
        min_uptime_min=0, idle_timeout_min=0, dry_run=True, now_fn=clk.now,
    )
    assert PollLoop(guard, interval_s=30, stop_evt=stop, clock=clk.now).run() is LoopExit.CANCELLED
    assert len(fired) == 20
    assert guard.state is GuardState.POLLING
