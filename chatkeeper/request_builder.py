"""chatkeeper/request_builder.py

Composes outgoing chat requests from retained history, the new user turn
and the resolved generation parameters.
"""

from __future__ import annotations

# Standard Library
from collections.abc import Sequence

# Local Modules
from chatkeeper.exceptions import InvalidArgumentError
from chatkeeper.models import ChatMessage, ChatParameters, ChatRequest


def require_text(text: str | None, what: str = "message") -> str:
    """Return ``text`` unchanged, or raise if it is missing or blank."""
    if text is None or not isinstance(text, str) or not text.strip():
        raise InvalidArgumentError(f"{what} must be a non-empty string")
    return text


def merge_parameters(
    defaults: ChatParameters,
    override: ChatParameters | None,
) -> ChatParameters:
    """Resolve per-call parameters; fields set in ``override`` win."""
    return defaults.merge(override)


def build_request(
    history: Sequence[ChatMessage],
    message: ChatMessage,
    default_model: str,
    default_parameters: ChatParameters,
    parameters: ChatParameters | None = None,
    model: str | None = None,
) -> ChatRequest:
    """Build the request for one turn.

    The history is copied, never mutated; persisting the new turn is left to
    the caller once the completion succeeds.

    Args:
        history: Current (non-expired) conversation history.
        message: The new user message.
        default_model: Model used when ``model`` is not given.
        default_parameters: Process-wide generation parameters.
        parameters: Optional per-call overrides.
        model: Optional per-call model identifier.

    Returns:
        The resolved ChatRequest.

    Raises:
        InvalidArgumentError: If the message text is empty.
    """
    require_text(message.content)

    return ChatRequest(
        model=model or default_model,
        messages=(*history, message),
        parameters=merge_parameters(default_parameters, parameters),
    )
