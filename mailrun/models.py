from __future__ import annotations

"""Core data models for a mail run.

Hierarchy:
- MessageSpec: immutable description of one outgoing email
- BodyKind: which body variant a MessageSpec carries (none, inline, file)
- RunResult: what a completed run reports back to the CLI

All models use Pydantic for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from mailrun.errors import ConfigError


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def split_list(value: str) -> list[str]:
    """Split a comma-delimited list, dropping blanks."""
    return [item.strip() for item in value.split(",") if item.strip()]


class BodyKind(str, Enum):
    """Body variant of a message.

    The multipart/alternative wrapper is only written for INLINE and FILE.
    """
    NONE = "none"
    INLINE = "inline"
    FILE = "file"


class MessageSpec(BaseModel):
    """Everything needed to compose and address one email.

    Recipients and attachments accept either a sequence or a single
    comma-delimited string; order is preserved.
    """
    model_config = ConfigDict(frozen=True)

    sender: str = ""
    recipients: tuple[str, ...] = ()
    subject: str = ""
    content: str = ""
    content_path: str = ""
    content_type: str = "plain"
    attachments: tuple[str, ...] = ()

    @field_validator("recipients", "attachments", mode="before")
    @classmethod
    def _split_comma_list(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(split_list(value))
        return tuple(str(item).strip() for item in value if str(item).strip())

    @field_validator("sender", "content_path")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("content_type")
    @classmethod
    def _subtype(cls, value: str) -> str:
        v = value.strip().lower()
        if not v:
            return "plain"
        if "/" in v or ";" in v or " " in v:
            raise ValueError("content_type must be a bare text subtype such as plain or html")
        return v

    @property
    def body_kind(self) -> BodyKind:
        if self.content:
            return BodyKind.INLINE
        if self.content_path:
            return BodyKind.FILE
        return BodyKind.NONE

    def ensure_sendable(self) -> None:
        """Raise ConfigError unless a sender and at least one recipient are set."""
        if not self.sender or not self.recipients:
            raise ConfigError("Must specify at least one From address and one To address")


class RunResult(BaseModel):
    run_id: str
    status: str
    sink: str
    estimated_size: int
    composed_size: int
    recipients: list[str]
    started_at: str
    finished_at: str
