"""
MQTT Shell Protocol Definitions (Shared)
Message schemas and topic names for controller-agent communication.

All messages are compact JSON objects, sealed with crypto.EnvelopeCipher
before they reach the broker.

# Controller -> Agent (Command), published on <prefix>/x9vkff7p4
# {
#   "action": "exec",
#   "command": ["ls", "-la", "/tmp"]
# }

# Agent -> Controller (Response), published on <prefix>/response/x9vkff7p4
# {
#   "success": true,
#   "message": "Command executed successfully",
#   "data": {"command": "ls -la /tmp", "output": "total 0\n..."},
#   "timestamp": "2024-05-01T10:15:30.123456+02:00"
# }

The topic suffix only namespaces traffic on a shared broker. It is not a
secret; every guarantee comes from the envelope.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ProtocolError, ValidationError

TOPIC_SUFFIX = "x9vkff7p4"

ACTION_EXEC = "exec"

# Delivery quality for every publish and subscription (at-least-once)
QOS = 1

# Recognized keys of Response.data
DATA_COMMAND = "command"
DATA_OUTPUT = "output"
DATA_ERROR = "error"


@dataclass(frozen=True)
class Topics:
    """Command and response topic pair derived from the configured prefix."""

    command: str
    response: str

    @classmethod
    def from_prefix(cls, prefix: str) -> "Topics":
        prefix = prefix.rstrip("/")
        return cls(
            command=f"{prefix}/{TOPIC_SUFFIX}",
            response=f"{prefix}/response/{TOPIC_SUFFIX}",
        )


def _dumps(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _loads(payload: bytes) -> Any:
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"invalid JSON: {exc}") from exc


_FRACTION = re.compile(r"(\.\d+)")


def format_timestamp(ts: datetime) -> str:
    """RFC 3339 text for a timestamp (naive values are taken as local time)."""
    if ts.tzinfo is None:
        ts = ts.astimezone()
    return ts.isoformat()


def parse_timestamp(text: str) -> datetime:
    """
    Parse an RFC 3339 timestamp.

    Accepts a trailing "Z" and fractional seconds of any length; anything
    past microseconds is dropped.
    """
    if not isinstance(text, str):
        raise ProtocolError("timestamp must be a string")
    value = text.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    match = _FRACTION.search(value)
    if match:
        digits = match.group(1)[1:7].ljust(6, "0")
        value = value[:match.start()] + "." + digits + value[match.end():]
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise ProtocolError(f"invalid timestamp {text!r}") from exc


@dataclass
class Command:
    """A request to run argv[0] with argv[1:] on the agent."""

    argv: List[str] = field(default_factory=list)
    action: str = ACTION_EXEC

    def validate(self) -> None:
        """Raise ValidationError unless there is something to execute."""
        if not self.argv:
            raise ValidationError("No command specified")

    def command_line(self) -> str:
        return " ".join(self.argv)

    def to_json(self) -> bytes:
        return _dumps({"action": self.action, "command": list(self.argv)})

    @classmethod
    def from_json(cls, payload: bytes) -> "Command":
        """
        Parse a decrypted command.

        Structural problems raise ProtocolError. A missing or null "command"
        parses to an empty argv, which validate() then rejects.
        """
        obj = _loads(payload)
        if obj is None:
            return cls(argv=[], action="")
        if not isinstance(obj, dict):
            raise ProtocolError("command must be a JSON object")

        action = obj.get("action")
        if action is None:
            action = ""
        elif not isinstance(action, str):
            raise ProtocolError("action must be a string")

        argv = obj.get("command")
        if argv is None:
            argv = []
        elif not isinstance(argv, list) or not all(isinstance(a, str) for a in argv):
            raise ProtocolError("command must be a list of strings")

        return cls(argv=list(argv), action=action)


@dataclass
class Response:
    """The agent's answer to one received command message."""

    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now().astimezone())

    @property
    def command(self) -> Optional[str]:
        return self._data_str(DATA_COMMAND)

    @property
    def output(self) -> Optional[str]:
        return self._data_str(DATA_OUTPUT)

    @property
    def error(self) -> Optional[str]:
        return self._data_str(DATA_ERROR)

    def _data_str(self, key: str) -> Optional[str]:
        if not self.data:
            return None
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    def to_json(self) -> bytes:
        return _dumps({
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "timestamp": format_timestamp(self.timestamp),
        })

    @classmethod
    def from_json(cls, payload: bytes) -> "Response":
        obj = _loads(payload)
        if not isinstance(obj, dict):
            raise ProtocolError("response must be a JSON object")

        success = obj.get("success", False)
        if not isinstance(success, bool):
            raise ProtocolError("success must be a boolean")

        message = obj.get("message")
        if message is None:
            message = ""
        elif not isinstance(message, str):
            raise ProtocolError("message must be a string")

        data = obj.get("data")
        if data is not None and not isinstance(data, dict):
            raise ProtocolError("data must be an object")

        raw_ts = obj.get("timestamp")
        if raw_ts is None:
            timestamp = datetime.now().astimezone()
        else:
            timestamp = parse_timestamp(raw_ts)

        return cls(success=success, message=message, data=data, timestamp=timestamp)


def failure(message: str, data: Optional[Dict[str, Any]] = None) -> Response:
    return Response(success=False, message=message, data=data)


def success(message: str, data: Optional[Dict[str, Any]] = None) -> Response:
    return Response(success=True, message=message, data=data)

