# rpc/errors.py
# Fault taxonomy for calls made over the management connection.

from __future__ import annotations
from typing import Optional


class Fault(Exception):
    """Base class for every failure surfaced by an RPC call."""
    kind = "fault"


class ProtocolFault(Fault):
    """
    A well-formed JSON-RPC error response.

    The call reached the server and the server refused it; the connection
    itself is still usable.
    """
    kind = "protocol_fault"

    def __init__(self, code: int, message: str, data: Optional[str] = None) -> None:
        self.code = int(code)
        self.message = message
        self.data = data
        text = f"JSON-RPC error {self.code}: {message}"
        if data:
            text += f" (data: {data})"
        super().__init__(text)


class MalformedMessage(Fault):
    """A frame or result that could not be decoded."""
    kind = "malformed"


class TransportLost(Fault):
    """I/O failure while writing or waiting; the caller may reconnect."""
    kind = "transport_lost"


class CallTimeout(TransportLost):
    """No response with a matching id arrived within the call timeout."""
    kind = "timeout"
