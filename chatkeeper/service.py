"""chatkeeper/service.py

Completion service collaborator: the protocol the conversation manager
consumes, and its Ollama-backed implementation.
"""

from __future__ import annotations

# Standard Library
import logging
from collections.abc import AsyncGenerator
from typing import Any, Protocol

# Third-Party Libraries
import httpx
from ollama import AsyncClient, ResponseError

# Local Modules
from chatkeeper.exceptions import UpstreamError, UpstreamErrorKind
from chatkeeper.models import ChatRequest, ChatUsage, Completion, CompletionDelta
from chatkeeper.settings import ChatKeeperSettings

logger = logging.getLogger(__name__)


class CompletionService(Protocol):
    """Stateless chat completion API."""

    async def complete(self, request: ChatRequest) -> Completion:
        """Return the full assistant reply for ``request``.

        Raises:
            UpstreamError: If the service or the transport fails.
        """
        ...

    def complete_stream(self, request: ChatRequest) -> AsyncGenerator[CompletionDelta, None]:
        """Yield reply fragments; the last one has ``done`` set.

        Raises:
            UpstreamError: If the service or the transport fails.
        """
        ...


# Generation knobs whose Ollama option name differs from ours.
_OPTION_NAMES: dict[str, str] = {"max_tokens": "num_predict"}


def _field(obj: Any, name: str) -> Any:
    """Read ``name`` from an Ollama response model or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _usage(response: Any) -> ChatUsage | None:
    prompt_tokens = _field(response, "prompt_eval_count")
    completion_tokens = _field(response, "eval_count")
    if prompt_tokens is None and completion_tokens is None:
        return None
    prompt_tokens = prompt_tokens or 0
    completion_tokens = completion_tokens or 0
    return ChatUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


def _content(response: Any) -> str:
    message = _field(response, "message")
    if message is None:
        return ""
    return _field(message, "content") or ""


def translate_error(exc: Exception) -> UpstreamError:
    """Convert an Ollama/httpx failure into an UpstreamError.

    Args:
        exc: Exception raised by the Ollama client.

    Returns:
        The equivalent UpstreamError. Callers chain ``exc`` as its cause.
    """
    if isinstance(exc, ResponseError):
        return UpstreamError(
            UpstreamErrorKind.from_status(exc.status_code),
            exc.error,
            status_code=exc.status_code,
        )
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        return UpstreamError(
            UpstreamErrorKind.from_status(status_code), str(exc), status_code=status_code
        )
    if isinstance(exc, (ConnectionError, httpx.TransportError)):
        return UpstreamError(UpstreamErrorKind.NETWORK, str(exc) or type(exc).__name__)
    return UpstreamError(UpstreamErrorKind.UNKNOWN, str(exc) or type(exc).__name__)


class OllamaCompletionService:
    """CompletionService backed by an Ollama (or compatible) chat endpoint."""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        api_key: str | None = None,
        timeout: float = 120.0,
        client: AsyncClient | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            host: Ollama API endpoint.
            api_key: Optional bearer token, sent as an Authorization header.
            timeout: Transport timeout in seconds.
            client: Pre-built AsyncClient, mainly for tests.
        """
        self.host = host
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        self._client = (
            client if client is not None else AsyncClient(host=host, timeout=timeout, headers=headers)
        )

    @classmethod
    def from_settings(cls, settings: ChatKeeperSettings) -> OllamaCompletionService:
        api_key = settings.api_key.get_secret_value() if settings.api_key else None
        return cls(host=settings.host, api_key=api_key, timeout=settings.request_timeout)

    @staticmethod
    def _options(request: ChatRequest) -> dict[str, Any]:
        return {
            _OPTION_NAMES.get(name, name): value
            for name, value in request.parameters.to_options().items()
        }

    async def complete(self, request: ChatRequest) -> Completion:
        logger.debug(
            "Sending %d messages to %s (model=%s)",
            len(request.messages),
            self.host,
            request.model,
        )
        try:
            response = await self._client.chat(
                model=request.model,
                messages=request.message_payloads(),
                options=self._options(request),
            )
        except Exception as exc:
            raise translate_error(exc) from exc

        content = _content(response)
        if not content:
            logger.warning("Empty response from model %s", request.model)

        return Completion(
            content=content,
            model=_field(response, "model") or request.model,
            finish_reason=_field(response, "done_reason"),
            usage=_usage(response),
        )

    async def complete_stream(self, request: ChatRequest) -> AsyncGenerator[CompletionDelta, None]:
        logger.debug(
            "Streaming %d messages to %s (model=%s)",
            len(request.messages),
            self.host,
            request.model,
        )
        try:
            stream = await self._client.chat(
                model=request.model,
                messages=request.message_payloads(),
                options=self._options(request),
                stream=True,
            )
            async for part in stream:
                done = bool(_field(part, "done"))
                yield CompletionDelta(
                    content=_content(part),
                    done=done,
                    model=_field(part, "model") or request.model,
                    finish_reason=_field(part, "done_reason"),
                    usage=_usage(part) if done else None,
                )
        except Exception as exc:
            raise translate_error(exc) from exc

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()
