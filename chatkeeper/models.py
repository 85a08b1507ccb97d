"""chatkeeper/models.py

Domain objects exchanged between the cache, the request/response assembly
logic and the completion service collaborator.
"""

from __future__ import annotations

# Standard Library
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

# Third-Party Libraries
from pydantic import BaseModel, ConfigDict, Field

# Local Modules
from chatkeeper.exceptions import UpstreamError, UpstreamErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Author of a conversation turn."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """A single immutable conversation turn."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> ChatMessage:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> ChatMessage:
        return cls(role=Role.ASSISTANT, content=content)

    def to_payload(self) -> dict[str, str]:
        """Return the role/content dict expected by chat completion APIs."""
        return {"role": self.role.value, "content": self.content}


class ChatParameters(BaseModel):
    """Generation knobs. Unset fields defer to the process-wide defaults."""

    model_config = ConfigDict(frozen=True)

    temperature: float | None = Field(None, ge=0.0, le=2.0)
    top_p: float | None = Field(None, ge=0.0, le=1.0)
    max_tokens: int | None = Field(None, ge=1)
    presence_penalty: float | None = Field(None, ge=-2.0, le=2.0)
    frequency_penalty: float | None = Field(None, ge=-2.0, le=2.0)
    seed: int | None = None
    stop: list[str] | None = None

    def merge(self, override: ChatParameters | None) -> ChatParameters:
        """Overlay every field ``override`` sets on top of these values.

        Args:
            override: Per-call parameters, or ``None`` to keep these as-is.

        Returns:
            A new ChatParameters instance; neither operand is modified.
        """
        if override is None:
            return self
        return self.model_copy(update=override.model_dump(exclude_none=True))

    def to_options(self) -> dict[str, Any]:
        """Return only the fields that carry a value."""
        return self.model_dump(exclude_none=True)


class ChatRequest(BaseModel):
    """Fully resolved outgoing request for the completion service."""

    model_config = ConfigDict(frozen=True)

    model: str
    messages: tuple[ChatMessage, ...]
    parameters: ChatParameters = Field(default_factory=ChatParameters)

    def message_payloads(self) -> list[dict[str, str]]:
        return [message.to_payload() for message in self.messages]


class ChatUsage(BaseModel):
    """Token usage as reported by the completion service."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatError(BaseModel):
    """Error details carried by a degraded response."""

    kind: UpstreamErrorKind
    message: str
    status_code: int | None = None

    @classmethod
    def from_exception(cls, exc: UpstreamError) -> ChatError:
        return cls(kind=exc.kind, message=exc.message, status_code=exc.status_code)


class Completion(BaseModel):
    """A complete single-shot reply from the completion service."""

    content: str
    model: str | None = None
    id: str | None = None
    finish_reason: str | None = None
    usage: ChatUsage | None = None
    created_at: datetime = Field(default_factory=utcnow)


class CompletionDelta(BaseModel):
    """One streamed fragment. ``done`` marks the end of the stream."""

    content: str = ""
    done: bool = False
    model: str | None = None
    id: str | None = None
    finish_reason: str | None = None
    usage: ChatUsage | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ChatResponse(BaseModel):
    """Result of an ask, or one partial result of a streamed ask."""

    conversation_id: UUID
    id: str | None = None
    model: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    message: ChatMessage | None = None
    finish_reason: str | None = None
    usage: ChatUsage | None = None
    error: ChatError | None = None
    is_partial: bool = False

    @property
    def is_successful(self) -> bool:
        return self.error is None

    @property
    def content(self) -> str:
        """Assistant text, or an empty string when there is none."""
        return self.message.content if self.message is not None else ""

    @property
    def role(self) -> Role:
        return self.message.role if self.message is not None else Role.ASSISTANT
