"""chatkeeper/assembler.py

Turns completion service output into ChatResponse objects and commits the
finished turn to the conversation cache.

A turn (user message + assistant reply) is committed only once the reply is
complete: after a successful single-shot call, or after the end-of-stream
marker of a streamed call. Failures, cancellation and streams that stop
early leave the history untouched.
"""

from __future__ import annotations

# Standard Library
import logging
from collections.abc import AsyncIterator
from uuid import UUID

# Local Modules
from chatkeeper.exceptions import UpstreamError, UpstreamErrorKind
from chatkeeper.memory import ConversationCache
from chatkeeper.models import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatUsage,
    Completion,
    CompletionDelta,
)

logger = logging.getLogger(__name__)


class ResponseAssembler:
    """Builds responses and writes completed turns back to the cache."""

    def __init__(self, cache: ConversationCache) -> None:
        self.cache = cache

    def commit(
        self,
        conversation_id: UUID,
        user_message: ChatMessage,
        assistant_message: ChatMessage,
    ) -> None:
        """Append a finished turn. Never suspends, so it cannot be half-applied."""
        self.cache.append(conversation_id, user_message)
        self.cache.append(conversation_id, assistant_message)

    def assemble(
        self,
        conversation_id: UUID,
        request: ChatRequest,
        completion: Completion,
    ) -> ChatResponse:
        """Commit a single-shot completion and return the response.

        Args:
            conversation_id: Conversation the turn belongs to.
            request: Request that produced ``completion``; its last message
                is the user turn.
            completion: Reply from the completion service.

        Returns:
            The assistant response.
        """
        assistant_message = ChatMessage.assistant(completion.content)
        self.commit(conversation_id, request.messages[-1], assistant_message)

        return ChatResponse(
            conversation_id=conversation_id,
            id=completion.id,
            model=completion.model or request.model,
            created_at=completion.created_at,
            message=assistant_message,
            finish_reason=completion.finish_reason,
            usage=completion.usage,
        )

    async def assemble_stream(
        self,
        conversation_id: UUID,
        request: ChatRequest,
        deltas: AsyncIterator[CompletionDelta],
    ) -> AsyncIterator[ChatResponse]:
        """Re-emit each delta as a partial response while accumulating it.

        The accumulated reply is committed exactly once, when the delta
        flagged ``done`` arrives. Nothing is committed if the stream raises,
        is cancelled, or ends without that marker.

        Args:
            conversation_id: Conversation the turn belongs to.
            request: Request that produced the stream.
            deltas: Fragments from the completion service.

        Yields:
            One partial ChatResponse per delta, in arrival order.

        Raises:
            UpstreamError: If the stream ends before the end marker.
        """
        buffer: list[str] = []
        usage: ChatUsage | None = None

        async for delta in deltas:
            buffer.append(delta.content)

            if delta.done:
                usage = delta.usage
                assistant_message = ChatMessage.assistant("".join(buffer))
                self.commit(conversation_id, request.messages[-1], assistant_message)
                logger.debug(
                    "Committed streamed reply for %s: %d deltas, %d chars",
                    conversation_id,
                    len(buffer),
                    len(assistant_message.content),
                )

            yield ChatResponse(
                conversation_id=conversation_id,
                id=delta.id,
                model=delta.model or request.model,
                created_at=delta.created_at,
                message=ChatMessage.assistant(delta.content),
                finish_reason=delta.finish_reason,
                usage=usage,
                is_partial=True,
            )

            if delta.done:
                return

        logger.warning(
            "Stream for %s ended without a completion marker; discarding %d deltas",
            conversation_id,
            len(buffer),
        )
        raise UpstreamError(
            UpstreamErrorKind.NETWORK, "stream ended before the completion marker"
        )
