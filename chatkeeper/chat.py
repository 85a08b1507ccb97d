"""chatkeeper/chat.py

Conversation lifecycle: setup, ask, streamed ask, retrieval and deletion of
conversations on top of a stateless chat completion service.
"""

from __future__ import annotations

# Standard Library
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from uuid import UUID, uuid4

# Local Modules
from chatkeeper.assembler import ResponseAssembler
from chatkeeper.exceptions import InvalidArgumentError, UpstreamError
from chatkeeper.memory import ConversationCache
from chatkeeper.models import (
    ChatError,
    ChatMessage,
    ChatParameters,
    ChatRequest,
    ChatResponse,
)
from chatkeeper.request_builder import build_request, require_text
from chatkeeper.service import CompletionService, OllamaCompletionService
from chatkeeper.settings import ChatKeeperSettings

logger = logging.getLogger(__name__)

ConversationId = UUID | str


def resolve_conversation_id(conversation_id: ConversationId | None) -> UUID:
    """Return ``conversation_id`` as a UUID, generating one when it is None.

    Raises:
        InvalidArgumentError: If the value is not a UUID or a UUID string.
    """
    if conversation_id is None:
        return uuid4()
    if isinstance(conversation_id, UUID):
        return conversation_id
    if isinstance(conversation_id, str):
        try:
            return UUID(conversation_id)
        except ValueError:
            pass
    raise InvalidArgumentError(f"malformed conversation id: {conversation_id!r}")


class ChatClient:
    """Keeps per-conversation history for a stateless completion service.

    Every call that reads and then writes a conversation holds that
    conversation's lock from the history read until the reply is committed,
    so concurrent asks on one conversation run one after another while
    different conversations proceed independently.
    """

    def __init__(
        self,
        service: CompletionService,
        settings: ChatKeeperSettings | None = None,
        cache: ConversationCache | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            service: Completion service collaborator.
            settings: Configuration snapshot. Read from the environment when
                omitted.
            cache: Conversation cache. Built from ``settings`` when omitted.
        """
        self.settings = settings if settings is not None else ChatKeeperSettings()
        self.service = service
        self.cache = cache if cache is not None else ConversationCache(
            message_limit=self.settings.message_limit,
            expiration=self.settings.message_expiration,
        )
        self.assembler = ResponseAssembler(self.cache)

        logger.info(
            "ChatClient initialized: model=%s, message_limit=%d, expiration=%s",
            self.settings.default_model,
            self.cache.message_limit,
            self.cache.expiration,
        )

    @classmethod
    def from_settings(cls, settings: ChatKeeperSettings | None = None) -> ChatClient:
        """Build a client talking to the Ollama endpoint named in ``settings``."""
        settings = settings if settings is not None else ChatKeeperSettings()
        return cls(OllamaCompletionService.from_settings(settings), settings)

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Release the completion service's resources, if it holds any."""
        close = getattr(self.service, "aclose", None)
        if close is not None:
            await close()

    async def setup(
        self,
        message: str,
        conversation_id: ConversationId | None = None,
    ) -> UUID:
        """Start (or restart) a conversation with a system message.

        Any existing history for ``conversation_id`` is cleared.

        Args:
            message: System message that frames the assistant's behavior.
            conversation_id: Conversation to reset. A new one is generated
                when omitted.

        Returns:
            The conversation id.

        Raises:
            InvalidArgumentError: If the message is empty or the id malformed.
        """
        system_message = ChatMessage.system(require_text(message, "system message"))
        conversation_id = resolve_conversation_id(conversation_id)

        async with self.cache.lock(conversation_id):
            self.cache.reset(conversation_id, system_message)

        logger.info("Conversation %s set up with a system message", conversation_id)
        return conversation_id

    async def ask(
        self,
        message: str,
        conversation_id: ConversationId | None = None,
        parameters: ChatParameters | None = None,
        model: str | None = None,
    ) -> ChatResponse:
        """Send a user message and return the assistant's reply.

        Args:
            message: The user message.
            conversation_id: Conversation to continue. A new one is started
                when omitted; its id is returned in the response.
            parameters: Overrides for the default generation parameters.
            model: Model to use instead of the default one.

        Returns:
            The assistant response. When ``throw_exception_on_error`` is
            false, upstream failures come back as a response with ``error``
            set and no message.

        Raises:
            InvalidArgumentError: If the message is empty or the id malformed.
            UpstreamError: If the completion service fails and
                ``throw_exception_on_error`` is true.
        """
        user_message = ChatMessage.user(require_text(message))
        conversation_id = resolve_conversation_id(conversation_id)

        async with self.cache.lock(conversation_id):
            request = self._build_request(conversation_id, user_message, parameters, model)
            try:
                completion = await self.service.complete(request)
            except UpstreamError as exc:
                return self._handle_error(conversation_id, request, exc)

            return self.assembler.assemble(conversation_id, request, completion)

    def ask_stream(
        self,
        message: str,
        conversation_id: ConversationId | None = None,
        parameters: ChatParameters | None = None,
        model: str | None = None,
    ) -> AsyncIterator[ChatResponse]:
        """Send a user message and stream the reply as partial responses.

        Arguments are validated immediately; the upstream call starts when
        the returned iterator is first advanced. Each iteration of a new
        call issues a new upstream request.

        Args:
            message: The user message.
            conversation_id: Conversation to continue, or None for a new one.
            parameters: Overrides for the default generation parameters.
            model: Model to use instead of the default one.

        Returns:
            An async iterator of partial ChatResponse objects, one per delta.

        Raises:
            InvalidArgumentError: If the message is empty or the id malformed.
        """
        user_message = ChatMessage.user(require_text(message))
        conversation_id = resolve_conversation_id(conversation_id)
        return self._stream(conversation_id, user_message, parameters, model)

    def get_conversation(self, conversation_id: ConversationId) -> list[ChatMessage]:
        """Return the conversation's messages, or an empty list if unknown."""
        try:
            conversation_id = resolve_conversation_id(conversation_id)
        except InvalidArgumentError:
            logger.debug("Ignoring lookup of malformed conversation id %r", conversation_id)
            return []
        return self.cache.get(conversation_id)

    async def delete_conversation(self, conversation_id: ConversationId) -> None:
        """Delete a conversation and its history. No-op if it does not exist."""
        conversation_id = resolve_conversation_id(conversation_id)
        async with self.cache.lock(conversation_id):
            self.cache.delete(conversation_id)
        logger.info("Conversation %s deleted", conversation_id)

    async def _stream(
        self,
        conversation_id: UUID,
        user_message: ChatMessage,
        parameters: ChatParameters | None,
        model: str | None,
    ) -> AsyncIterator[ChatResponse]:
        async with self.cache.lock(conversation_id):
            request = self._build_request(conversation_id, user_message, parameters, model)
            try:
                async with aclosing(self.service.complete_stream(request)) as deltas:
                    async with aclosing(
                        self.assembler.assemble_stream(conversation_id, request, deltas)
                    ) as responses:
                        async for response in responses:
                            yield response
            except UpstreamError as exc:
                yield self._handle_error(conversation_id, request, exc)

    def _build_request(
        self,
        conversation_id: UUID,
        user_message: ChatMessage,
        parameters: ChatParameters | None,
        model: str | None,
    ) -> ChatRequest:
        history = self.cache.get(conversation_id)
        request = build_request(
            history,
            user_message,
            default_model=self.settings.default_model,
            default_parameters=self.settings.default_parameters,
            parameters=parameters,
            model=model,
        )
        logger.debug(
            "Conversation %s: sending %d messages (model=%s)",
            conversation_id,
            len(request.messages),
            request.model,
        )
        return request

    def _handle_error(
        self,
        conversation_id: UUID,
        request: ChatRequest,
        exc: UpstreamError,
    ) -> ChatResponse:
        """Raise ``exc`` or turn it into a degraded response, per settings."""
        logger.error("Completion failed for conversation %s: %s", conversation_id, exc)
        if self.settings.throw_exception_on_error:
            raise exc

        logger.warning("Returning degraded response for conversation %s", conversation_id)
        return ChatResponse(
            conversation_id=conversation_id,
            model=request.model,
            error=ChatError.from_exception(exc),
        )
