# rpc/correlator.py
# Matches JSON-RPC responses to their calls over one shared duplex connection.

from __future__ import annotations

import sys
import threading
from typing import Any, Dict, List, Optional, Protocol

from .errors import CallTimeout, MalformedMessage, ProtocolFault, TransportLost
from .protocol import (
    METHOD_PLAYERS, METHOD_SERVER_STOP, Player, Request, Response,
    decode_response, encode_request, parse_players,
)

# METRICS: per-call outcomes and discarded frames
try:
    from observability.metrics import rpc_calls_total, rpc_unmatched_responses_total
except Exception:  # metrics optional
    rpc_calls_total = rpc_unmatched_responses_total = None  # type: ignore

TAG = "[rpc]"
DEFAULT_TIMEOUT_S = 30.0


class Connection(Protocol):
    """What the correlator needs from a connection (websockets.sync ClientConnection fits)."""
    def send(self, message: str) -> None: ...
    def recv(self) -> str | bytes: ...
    def close(self) -> None: ...


def _log(*a) -> None:
    print(TAG, *a, file=sys.stderr, flush=True)


def _count(method: str, outcome: str) -> None:
    if rpc_calls_total is not None:
        try:
            rpc_calls_total.labels(method=method, outcome=outcome).inc()
        except Exception:
            pass


class _Pending:
    __slots__ = ("id", "method", "done", "response", "error")

    def __init__(self, msg_id: int, method: str) -> None:
        self.id = msg_id
        self.method = method
        self.done = threading.Event()
        self.response: Optional[Response] = None
        self.error: Optional[TransportLost] = None


class PendingTable:
    """
    Request id -> waiting caller, for one connection's lifetime.

    Ids start at 1 and only grow; an id is handed out once and its slot is
    removed on the matching response, on discard (send failure / timeout),
    or when the connection is lost. After fail_all() no new ids are issued.
    """

    def __init__(self) -> None:
        self._mu = threading.Lock()
        self._next_id = 0
        self._slots: Dict[int, _Pending] = {}
        self._lost: Optional[str] = None

    def issue(self, method: str) -> _Pending:
        with self._mu:
            if self._lost is not None:
                raise TransportLost(self._lost)
            self._next_id += 1
            slot = _Pending(self._next_id, method)
            self._slots[slot.id] = slot
            return slot

    def resolve(self, resp: Response) -> bool:
        """Hand a response to its caller. False if no pending call has that id."""
        if resp.id is None:
            return False
        with self._mu:
            slot = self._slots.pop(resp.id, None)
        if slot is None:
            return False
        slot.response = resp
        slot.done.set()
        return True

    def discard(self, msg_id: int) -> bool:
        with self._mu:
            return self._slots.pop(msg_id, None) is not None

    def fail_all(self, reason: str) -> int:
        with self._mu:
            if self._lost is None:
                self._lost = reason
            slots: List[_Pending] = list(self._slots.values())
            self._slots.clear()
        for slot in slots:
            slot.error = TransportLost(reason)
            slot.done.set()
        return len(slots)

    @property
    def lost(self) -> Optional[str]:
        with self._mu:
            return self._lost

    def __len__(self) -> int:
        with self._mu:
            return len(self._slots)


class RpcClient:
    """
    Synchronous JSON-RPC calls over a connection that is read by one
    background thread. Each call blocks only on its own id.
    """

    def __init__(self, conn: Connection, *, timeout_s: float = DEFAULT_TIMEOUT_S,
                 start_reader: bool = True) -> None:
        self.conn = conn
        self.timeout_s = float(timeout_s)
        self.pending = PendingTable()
        self._send_mu = threading.Lock()
        self._reader: Optional[threading.Thread] = None
        if start_reader:
            self.start()

    # ----- lifecycle -----

    def start(self) -> None:
        if self._reader is not None:
            return
        self._reader = threading.Thread(target=self._read_loop, name="rpc-reader", daemon=True)
        self._reader.start()

    def close(self, join_timeout_s: float = 5.0) -> None:
        try:
            self.conn.close()
        except Exception as e:
            _log(f"Error closing connection: {e}")
        self.pending.fail_all("connection closed")
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(join_timeout_s)

    @property
    def alive(self) -> bool:
        return self.pending.lost is None

    # ----- reader -----

    def _read_loop(self) -> None:
        while True:
            try:
                frame = self.conn.recv()
            except Exception as e:
                n = self.pending.fail_all(f"connection lost: {e}")
                if n:
                    _log(f"Connection lost with {n} call(s) in flight: {e}")
                return
            self._dispatch(frame)

    def _dispatch(self, frame: str | bytes) -> None:
        try:
            resp = decode_response(frame)
        except MalformedMessage as e:
            _log(f"Discarding undecodable frame: {e}")
            return
        if not self.pending.resolve(resp):
            if rpc_unmatched_responses_total is not None:
                try: rpc_unmatched_responses_total.inc()
                except Exception: pass
            if resp.error is not None:
                _log(f"Discarding error response with unknown id={resp.id}: "
                     f"code={resp.error.code} message={resp.error.message}")
            else:
                _log(f"Discarding response with unknown id={resp.id}")

    # ----- calls -----

    def call(self, method: str, params: Any = None, *, timeout_s: Optional[float] = None) -> Any:
        """
        Send one request and wait for the response with the same id.
        Raises ProtocolFault for an error response, TransportLost (or
        CallTimeout) when the connection fails or stays silent.
        """
        slot = self.pending.issue(method)
        frame = encode_request(Request(method=method, id=slot.id, params=params))
        try:
            with self._send_mu:
                self.conn.send(frame)
        except Exception as e:
            self.pending.discard(slot.id)
            _count(method, TransportLost.kind)
            raise TransportLost(f"failed to send request: {e}") from e

        timeout = self.timeout_s if timeout_s is None else timeout_s
        if not slot.done.wait(timeout):
            # a response may have landed between the wait and the discard
            if self.pending.discard(slot.id):
                _count(method, CallTimeout.kind)
                raise CallTimeout(f"no response to {method} id={slot.id} within {timeout:.1f}s")
            slot.done.wait()

        if slot.error is not None:
            _count(method, TransportLost.kind)
            raise slot.error

        resp = slot.response
        assert resp is not None
        if resp.error is not None:
            _count(method, ProtocolFault.kind)
            raise ProtocolFault(resp.error.code, resp.error.message, resp.error.data)
        _count(method, "ok")
        return resp.result

    def list_players(self) -> List[Player]:
        return parse_players(self.call(METHOD_PLAYERS))

    def stop_server(self) -> Any:
        return self.call(METHOD_SERVER_STOP)
