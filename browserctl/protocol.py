"""
Line-delimited JSON command protocol.

Request:  {"command": "open", "args": ["https://example.com"]}
Response: {"ok": true, "result": ...} or {"ok": false, "error": "..."}

Each message occupies exactly one line. The same framing is used on the
server's stdin/stdout pipes and on its attach socket.
"""
import json
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ProtocolError, describe_error


class CommandRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    command: str = Field(..., min_length=1, max_length=100)
    args: List[str] = Field(default_factory=list)

    def to_line(self) -> bytes:
        return (json.dumps({"command": self.command, "args": self.args}) + "\n").encode()


@dataclass
class CommandResponse:
    ok: bool
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, result: Any) -> "CommandResponse":
        return cls(ok=True, result=result)

    @classmethod
    def failure(cls, exc: Union[BaseException, str]) -> "CommandResponse":
        message = exc if isinstance(exc, str) else describe_error(exc)
        return cls(ok=False, error=message)

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, "result": self.result}
        return {"ok": False, "error": self.error}

    def to_line(self) -> bytes:
        # eval results may hold values json cannot encode natively
        return (json.dumps(self.to_dict(), default=str) + "\n").encode()

    @classmethod
    def from_dict(cls, data: Any) -> "CommandResponse":
        if not isinstance(data, dict) or not isinstance(data.get("ok"), bool):
            raise ProtocolError(f"Malformed response: {data!r}")
        if data["ok"]:
            return cls(ok=True, result=data.get("result"))
        return cls(ok=False, error=str(data.get("error") or "unknown error"))


def _text(line: Union[str, bytes]) -> str:
    if isinstance(line, bytes):
        try:
            return line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Request is not valid UTF-8: {e}") from e
    return line


def decode_request(line: Union[str, bytes]) -> Optional[CommandRequest]:
    """Parse one request line. Blank lines yield None."""
    text = _text(line).strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Request must be a JSON object")
    try:
        return CommandRequest.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
            for err in e.errors()
        )
        raise ProtocolError(f"Invalid request: {problems}") from e


def try_decode_response(line: Union[str, bytes]) -> Optional[CommandResponse]:
    """
    Parse one response line.

    Returns None when the line is not a complete JSON document, so callers
    can keep reading. A complete document of the wrong shape raises
    ProtocolError.
    """
    text = _text(line).strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return CommandResponse.from_dict(data)
