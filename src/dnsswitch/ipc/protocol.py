"""Wire messages exchanged between the client and the privileged engine.

Brief:
  Requests are a tagged union on `op`; every reply echoes the request id and
  carries the uniform (ok, message) result plus an optional error kind and
  data payload. Messages are framed as one JSON object per line.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..models import ErrorKind, OpResult

MAX_LINE_BYTES = 64 * 1024
ENCODING = "utf-8"


class ProtocolError(ValueError):
    """Brief: Raised when a line cannot be decoded into a known message."""


class _Message(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int = 0


class IsReadyRequest(_Message):
    op: Literal["is_ready"] = "is_ready"


class ApplyDNSRequest(_Message):
    op: Literal["apply"] = "apply"
    servers: List[str] = Field(default_factory=list)


class ClearDNSRequest(_Message):
    op: Literal["clear"] = "clear"


class FlushCacheRequest(_Message):
    op: Literal["flush"] = "flush"


class StatusRequest(_Message):
    op: Literal["status"] = "status"


Request = Annotated[
    Union[IsReadyRequest, ApplyDNSRequest, ClearDNSRequest, FlushCacheRequest, StatusRequest],
    Field(discriminator="op"),
]

_REQUEST_ADAPTER: TypeAdapter = TypeAdapter(Request)


class Response(BaseModel):
    """Brief: Reply to one request.

    Inputs:
      - id: Id of the request being answered (0 when it could not be parsed).
      - ok / message: Uniform operation result.
      - error: ErrorKind value on failure.
      - data: Optional structured payload.

    Example:
      >>> Response.from_result(3, OpResult.success("Flushed cache")).ok
      True
    """

    model_config = ConfigDict(extra="ignore")

    id: int = 0
    ok: bool
    message: str = ""
    error: Optional[ErrorKind] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_result(cls, request_id: int, result: OpResult) -> "Response":
        return cls(
            id=request_id,
            ok=result.ok,
            message=result.message,
            error=result.error,
            data=result.data,
        )

    def to_result(self) -> OpResult:
        return OpResult(self.ok, self.message, self.error, self.data)


def request_for(op: str, servers: Optional[List[str]] = None, request_id: int = 0):
    """Brief: Build a request model from an operation name.

    Inputs:
      - op: One of is_ready, apply, clear, flush, status.
      - servers: Server strings for apply.
      - request_id: Correlation id.

    Outputs:
      - Request model instance.

    Raises:
      - ProtocolError: unknown op.
    """

    payload: Dict[str, Any] = {"op": op, "id": request_id}
    if op == "apply":
        payload["servers"] = list(servers or [])
    return parse_request(payload)


def parse_request(payload: Any):
    try:
        return _REQUEST_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid request: {exc.errors(include_url=False)}") from exc


def encode(message: BaseModel) -> bytes:
    """Brief: Serialize a message to one newline-terminated JSON line."""
    return message.model_dump_json(exclude_none=True).encode(ENCODING) + b"\n"


def _decode_json(line: bytes) -> Any:
    if len(line) > MAX_LINE_BYTES:
        raise ProtocolError(f"Message exceeds {MAX_LINE_BYTES} bytes")
    try:
        return json.loads(line.decode(ENCODING))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"Malformed message: {exc}") from exc


def decode_request(line: bytes):
    """Brief: Parse one request line.

    Raises:
      - ProtocolError: invalid JSON, unknown op or bad fields.
    """

    return parse_request(_decode_json(line))


def decode_response(line: bytes) -> Response:
    """Brief: Parse one reply line.

    Raises:
      - ProtocolError: invalid JSON or missing fields.
    """

    payload = _decode_json(line)
    try:
        return Response.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid response: {exc.errors(include_url=False)}") from exc


def request_id_hint(line: bytes) -> int:
    """Brief: Best-effort id extraction from a line that failed validation."""
    try:
        payload = json.loads(line.decode(ENCODING))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return 0
    if isinstance(payload, dict) and isinstance(payload.get("id"), int):
        return payload["id"]
    return 0
