"""chatkeeper/settings.py

Runtime configuration loaded from environment variables / .env file.

Configure via environment variables (prefix ``CHATKEEPER_``):
  CHATKEEPER_API_KEY                  - bearer credential for the completion service
  CHATKEEPER_HOST                     - completion service base URL
  CHATKEEPER_DEFAULT_MODEL            - model used when a call does not name one
  CHATKEEPER_DEFAULT_PARAMETERS__*    - default generation knobs (e.g. __TEMPERATURE)
  CHATKEEPER_MESSAGE_LIMIT            - messages retained per conversation
  CHATKEEPER_MESSAGE_EXPIRATION       - idle expiration as an ISO 8601 duration (e.g. PT30M)
  CHATKEEPER_THROW_EXCEPTION_ON_ERROR - raise upstream errors instead of returning them
  CHATKEEPER_REQUEST_TIMEOUT          - transport timeout in seconds
"""

from __future__ import annotations

# Standard Library
from datetime import timedelta

# Third-Party Libraries
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Local Modules
from chatkeeper.models import ChatParameters

DEFAULT_MODEL = "llama3.1:8b-instruct-q4_K_M"
DEFAULT_MESSAGE_LIMIT = 10
DEFAULT_MESSAGE_EXPIRATION = timedelta(hours=1)


class ChatKeeperSettings(BaseSettings):
    """Immutable configuration snapshot read once at client construction.

    Attributes:
        api_key: Optional bearer credential sent to the completion service.
        host: Base URL of the completion service.
        default_model: Model identifier used when a call passes none.
        default_parameters: Process-wide generation parameters.
        message_limit: Maximum messages retained per conversation.
        message_expiration: Idle time after which a conversation is dropped.
        throw_exception_on_error: Raise upstream failures when true, return
            a response with ``error`` populated when false.
        request_timeout: Transport timeout in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="CHATKEEPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    api_key: SecretStr | None = Field(
        None,
        description="Bearer credential for the completion service.",
    )
    host: str = Field(
        "http://localhost:11434",
        description="Completion service base URL.",
    )
    default_model: str = Field(
        DEFAULT_MODEL,
        min_length=1,
        description="Model used when a call does not name one.",
    )
    default_parameters: ChatParameters = Field(
        default_factory=ChatParameters,
        description="Default generation parameters, overridable per call.",
    )
    message_limit: int = Field(
        DEFAULT_MESSAGE_LIMIT,
        ge=1,
        description="Maximum number of messages kept per conversation.",
    )
    message_expiration: timedelta = Field(
        DEFAULT_MESSAGE_EXPIRATION,
        description="Idle time after which a conversation is discarded.",
    )
    throw_exception_on_error: bool = Field(
        True,
        description="Raise upstream errors instead of returning degraded responses.",
    )
    request_timeout: float = Field(
        120.0,
        gt=0,
        description="Transport timeout in seconds.",
    )

    @field_validator("message_expiration")
    @classmethod
    def _positive_expiration(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("message_expiration must be positive")
        return value
