"""Session channel layout and wire formats.

Every session lives under a channel prefix shared by both peers:

    <prefix>/in      Controller -> Agent   raw keystroke bytes
    <prefix>/out     Agent -> Controller   raw PTY output bytes
    <prefix>/resize  Controller -> Agent   {"rows": R, "cols": C}
    <prefix>/status  Agent -> Controller   {"event": "...", "code": N | null}

Input and output payloads are passed through untouched. Resize and status
payloads are small UTF-8 JSON documents.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError

UINT16_MAX = 0xFFFF


class Channel(str, Enum):
    """Logical sub-channels of a session."""

    INPUT = "in"
    OUTPUT = "out"
    RESIZE = "resize"
    STATUS = "status"


@dataclass(frozen=True, slots=True)
class Topics:
    """Broker topic names for one channel prefix."""

    prefix: str

    def __post_init__(self) -> None:
        if not self.prefix:
            raise ValueError("Channel prefix must not be empty")
        if "+" in self.prefix or "#" in self.prefix:
            raise ValueError(f"Channel prefix {self.prefix!r} must not contain MQTT wildcards")
        if self.prefix.endswith("/"):
            raise ValueError(f"Channel prefix {self.prefix!r} must not end with '/'")

    def topic(self, channel: Channel) -> str:
        return f"{self.prefix}/{channel.value}"

    @property
    def input(self) -> str:
        return self.topic(Channel.INPUT)

    @property
    def output(self) -> str:
        return self.topic(Channel.OUTPUT)

    @property
    def resize(self) -> str:
        return self.topic(Channel.RESIZE)

    @property
    def status(self) -> str:
        return self.topic(Channel.STATUS)


# Resize


@dataclass(frozen=True, slots=True)
class TerminalSize:
    rows: int
    columns: int


class ResizeDecodeError(ValueError):
    """A resize payload could not be decoded."""


class ResizeEvent(BaseModel):
    """Terminal dimensions carried on the resize channel."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    rows: int = Field(ge=0, le=UINT16_MAX, strict=True)
    columns: int = Field(ge=0, le=UINT16_MAX, strict=True, alias="cols")


def encode_resize(rows: int, columns: int) -> bytes:
    """Encode a (rows, columns) pair for the resize channel.

    Raises:
        ValueError: If either dimension does not fit in an unsigned 16-bit int.
    """
    try:
        event = ResizeEvent(rows=rows, columns=columns)
    except ValidationError as e:
        raise ValueError(f"Invalid terminal size {rows}x{columns}") from e
    return event.model_dump_json(by_alias=True).encode("utf-8")


def decode_resize(data: bytes) -> ResizeEvent:
    """Decode a resize channel payload.

    Raises:
        ResizeDecodeError: If the payload is truncated, not JSON, or out of range.
    """
    try:
        return ResizeEvent.model_validate_json(data)
    except ValidationError as e:
        raise ResizeDecodeError(f"Malformed resize payload {data[:64]!r}") from e


# Status


class StatusEvent(str, Enum):
    """Liveness notifications published by the Agent."""

    AGENT_STARTED = "agent_started"
    SHELL_STARTED = "shell_started"
    SHELL_EXITED = "shell_exited"
    SHELL_RESTARTING = "shell_restarting"
    AGENT_STOPPING = "agent_stopping"


class StatusMessage(BaseModel):
    """A status channel message. ``code`` is only set for ``shell_exited``."""

    model_config = ConfigDict(frozen=True)

    event: StatusEvent
    code: int | None = None

    def describe(self) -> str:
        """Short human-readable form for the Controller's status line."""
        if self.event == StatusEvent.AGENT_STARTED:
            return "agent online"
        if self.event == StatusEvent.SHELL_STARTED:
            return "shell started"
        if self.event == StatusEvent.SHELL_EXITED:
            return f"shell exited with code {self.code}"
        if self.event == StatusEvent.SHELL_RESTARTING:
            return "shell restarting"
        return "agent stopping"


def encode_status(event: StatusEvent, code: int | None = None) -> bytes:
    return StatusMessage(event=event, code=code).model_dump_json().encode("utf-8")


def decode_status(data: bytes) -> StatusMessage | None:
    """Decode a status payload, or return None if it is not one we understand."""
    try:
        return StatusMessage.model_validate_json(data)
    except ValidationError:
        return None


__all__ = [
    "Channel",
    "Topics",
    "TerminalSize",
    "ResizeDecodeError",
    "ResizeEvent",
    "encode_resize",
    "decode_resize",
    "StatusEvent",
    "StatusMessage",
    "encode_status",
    "decode_status",
]
