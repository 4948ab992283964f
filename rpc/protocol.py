# rpc/protocol.py
# JSON-RPC 2.0 request/response codec and the player record returned by minecraft:players.

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import json

from .errors import MalformedMessage

JSONRPC_VERSION = "2.0"

METHOD_PLAYERS = "minecraft:players"
METHOD_SERVER_STOP = "minecraft:server/stop"


@dataclass(frozen=True)
class Request:
    method: str
    id: int
    params: Any = None


@dataclass(frozen=True)
class ErrorObject:
    code: int
    message: str
    data: Optional[str] = None


@dataclass(frozen=True)
class Response:
    id: Optional[int]
    result: Any = None
    error: Optional[ErrorObject] = None


@dataclass(frozen=True)
class Player:
    id: str
    name: str


def encode_request(req: Request) -> str:
    body: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": req.method, "id": req.id}
    # params is omitted entirely when empty, never sent as null
    if req.params is not None:
        body["params"] = req.params
    return json.dumps(body)


def decode_response(frame: str | bytes) -> Response:
    """
    Decode one text frame into a Response.
    Frames that are not JSON objects raise MalformedMessage; a frame without
    an integer id decodes with id=None so the caller can discard it.
    """
    try:
        obj = json.loads(frame)
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"invalid JSON frame: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedMessage(f"expected a JSON object, got {type(obj).__name__}")

    raw_id = obj.get("id")
    # bool is an int subclass; a literal true is not a request id
    msg_id = raw_id if isinstance(raw_id, int) and not isinstance(raw_id, bool) else None

    err = obj.get("error")
    if err is not None:
        if not isinstance(err, dict):
            raise MalformedMessage("error member is not an object")
        try:
            code = int(err.get("code", 0))
        except (TypeError, ValueError):
            code = 0
        data = err.get("data")
        return Response(
            id=msg_id,
            error=ErrorObject(
                code=code,
                message=str(err.get("message", "")),
                data=None if data is None else str(data),
            ),
        )
    return Response(id=msg_id, result=obj.get("result"))


def parse_players(result: Any) -> List[Player]:
    """Accepts a bare list of {id, name} records or an object wrapping them under 'players'."""
    if result is None:
        return []
    if isinstance(result, dict):
        # an object without a players list is not an empty server
        if not isinstance(result.get("players"), list):
            raise MalformedMessage(f"failed to parse players result: object keys {sorted(result)}")
        result = result["players"]
    if not isinstance(result, list):
        raise MalformedMessage(f"failed to parse players result: {type(result).__name__}")
    players: List[Player] = []
    for rec in result:
        if not isinstance(rec, dict):
            raise MalformedMessage("failed to parse players result: record is not an object")
        players.append(Player(id=str(rec.get("id", "")), name=str(rec.get("name", ""))))
    return players
