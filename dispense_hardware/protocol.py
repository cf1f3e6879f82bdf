"""
Wire protocol of the dispenser controller firmware.

Line-oriented ASCII.  Commands go out as one line each; responses come
back CRLF-terminated, one token per line.

    I42S          session init    -> RCVOK (received), MTROK (motor ready)
    M{slot}{dir}  motor activate  -> MMOK (accepted), SNOK | SNFLD, STPOK

Informational tokens (ONOK power on, INOK ready for command, RCVOK) may
appear between cycles.  Lines starting with ``ERROR`` or ``Error:`` are
firmware faults.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_INIT_COMMAND = "I42S"
DEFAULT_DIRECTION = "F"
DEFAULT_TERMINATOR = "\n"
RESPONSE_DELIMITER = "\r\n"


class Token(str, Enum):
    POWER_ON = "ONOK"
    READY_FOR_COMMAND = "INOK"
    INIT_RECEIVED = "RCVOK"
    MOTOR_READY = "MTROK"
    MOTOR_ACCEPTED = "MMOK"
    SENSOR_CONFIRMED = "SNOK"
    SENSOR_FAILED = "SNFLD"
    CYCLE_COMPLETE = "STPOK"


# Tolerated outside of the token currently awaited
INFORMATIONAL_TOKENS = frozenset(
    {Token.POWER_ON, Token.READY_FOR_COMMAND, Token.INIT_RECEIVED}
)


class LineKind(str, Enum):
    TOKEN = "token"
    FAULT = "fault"
    UNKNOWN = "unknown"
    EMPTY = "empty"


@dataclass(frozen=True)
class ParsedLine:
    kind: LineKind
    raw: str
    token: Token | None = None

    @property
    def is_informational(self) -> bool:
        return self.token in INFORMATIONAL_TOKENS


def parse_line(raw: str) -> ParsedLine:
    """Classify one response line.  Surrounding whitespace and CR/LF are ignored."""
    text = raw.strip()
    if not text:
        return ParsedLine(LineKind.EMPTY, text)
    if text.upper().startswith("ERROR"):
        return ParsedLine(LineKind.FAULT, text)
    try:
        return ParsedLine(LineKind.TOKEN, text, Token(text))
    except ValueError:
        return ParsedLine(LineKind.UNKNOWN, text)


def motor_command(slot_id: str, direction: str = DEFAULT_DIRECTION) -> str:
    """``M11F`` for slot 11 forward."""
    if not slot_id or any(c.isspace() for c in slot_id):
        raise ValueError(f"Invalid slot id for motor command: {slot_id!r}")
    return f"M{slot_id}{direction}"


def encode_command(command: str, terminator: str = DEFAULT_TERMINATOR) -> bytes:
    return f"{command}{terminator}".encode("ascii")


def decode_line(data: bytes) -> str:
    return data.decode("ascii", errors="replace").strip()
