"""tests/test_chat.py

Unit tests for the ChatClient class (chatkeeper/chat.py).
Tests the conversation lifecycle against a scripted completion service.
"""

from __future__ import annotations

# Standard Library
import asyncio
from datetime import timedelta
from unittest.mock import patch
from uuid import UUID, uuid4

# Third-Party Libraries
import pytest

# Local Modules
from chatkeeper.chat import ChatClient, resolve_conversation_id
from chatkeeper.exceptions import InvalidArgumentError, UpstreamError, UpstreamErrorKind
from chatkeeper.memory import ConversationCache
from chatkeeper.models import ChatMessage, ChatParameters, Role
from fakes import FakeClock, FakeCompletionService, make_settings


def _contents(messages: list[ChatMessage]) -> list[str]:
    return [message.content for message in messages]


async def _collect(iterator) -> list:
    return [item async for item in iterator]


class TestResolveConversationId:
    """Test suite for resolve_conversation_id."""

    def test_generates_when_missing(self) -> None:
        """Test that a fresh id is generated for None."""
        first = resolve_conversation_id(None)
        second = resolve_conversation_id(None)
        assert isinstance(first, UUID)
        assert first != second

    def test_accepts_uuid_and_string(self) -> None:
        """Test that UUIDs pass through and UUID strings are parsed."""
        conversation_id = uuid4()
        assert resolve_conversation_id(conversation_id) is conversation_id
        assert resolve_conversation_id(str(conversation_id)) == conversation_id

    @pytest.mark.parametrize("value", ["not-a-uuid", "", 42])
    def test_rejects_malformed(self, value: object) -> None:
        """Test that malformed ids raise InvalidArgumentError."""
        with pytest.raises(InvalidArgumentError):
            resolve_conversation_id(value)  # type: ignore[arg-type]


class TestChatClient:
    """Test suite for ChatClient lifecycle operations."""

    def test_initialization_from_settings(self, service: FakeCompletionService) -> None:
        """Test that the cache is built from the settings snapshot."""
        settings = make_settings(message_limit=4)
        client = ChatClient(service, settings=settings)

        assert client.cache.message_limit == 4
        assert client.cache.expiration == settings.message_expiration

    def test_injected_empty_cache_is_kept(
        self, service: FakeCompletionService, clock: FakeClock
    ) -> None:
        """Test that a caller-supplied cache is used even while it is empty."""
        cache = ConversationCache(message_limit=3, expiration=timedelta(minutes=5), clock=clock)
        client = ChatClient(service, settings=make_settings(), cache=cache)

        assert len(cache) == 0
        assert client.cache is cache
        assert client.assembler.cache is cache
        assert client.cache.message_limit == 3

    def test_injected_cache_limit_applies(self, service: FakeCompletionService) -> None:
        """Test that asks trim with the injected cache's limit, not the settings'."""
        cache = ConversationCache(message_limit=3)
        client = ChatClient(service, settings=make_settings(message_limit=10), cache=cache)
        conversation_id = asyncio.run(client.setup("sys"))

        asyncio.run(client.ask("a", conversation_id))
        asyncio.run(client.ask("b", conversation_id))

        assert _contents(client.get_conversation(conversation_id)) == ["sys", "b", "reply to b"]

    @patch("chatkeeper.chat.OllamaCompletionService")
    def test_from_settings_builds_ollama_service(self, mock_service_class) -> None:
        """Test that from_settings wires the Ollama collaborator."""
        settings = make_settings()
        client = ChatClient.from_settings(settings)

        mock_service_class.from_settings.assert_called_once_with(settings)
        assert client.service is mock_service_class.from_settings.return_value

    def test_setup_then_get(self, client: ChatClient, system_message: str) -> None:
        """Test that setup followed by get returns exactly the system message."""
        conversation_id = asyncio.run(client.setup(system_message))

        history = client.get_conversation(conversation_id)
        assert len(history) == 1
        assert history[0].role is Role.SYSTEM
        assert history[0].content == system_message

    def test_setup_clears_existing_conversation(self, client: ChatClient) -> None:
        """Test that setup on a known id resets its history."""
        response = asyncio.run(client.ask("Hello"))

        asyncio.run(client.setup("Be brief.", response.conversation_id))

        assert _contents(client.get_conversation(response.conversation_id)) == ["Be brief."]

    def test_setup_rejects_empty_message(self, client: ChatClient) -> None:
        """Test that an empty system message is rejected."""
        with pytest.raises(InvalidArgumentError):
            asyncio.run(client.setup("  "))

    def test_ask_starts_new_conversation(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that ask without an id creates a conversation."""
        service.replies = ["Hi! How can I help you?"]

        response = asyncio.run(client.ask("Hello"))

        assert isinstance(response.conversation_id, UUID)
        assert response.content == "Hi! How can I help you?"
        assert response.role is Role.ASSISTANT
        assert response.model == "test-model"
        assert response.usage.total_tokens == 8
        assert _contents(client.get_conversation(response.conversation_id)) == [
            "Hello",
            "Hi! How can I help you?",
        ]

    def test_ask_replays_history(
        self, client: ChatClient, service: FakeCompletionService, system_message: str
    ) -> None:
        """Test that follow-up requests carry the retained history."""
        conversation_id = asyncio.run(client.setup(system_message))
        asyncio.run(client.ask("First message", conversation_id))
        asyncio.run(client.ask("Second message", conversation_id))

        last_request = service.requests[-1]
        assert _contents(list(last_request.messages)) == [
            system_message,
            "First message",
            "reply to First message",
            "Second message",
        ]

    def test_ask_accepts_string_id(self, client: ChatClient) -> None:
        """Test that a UUID string continues the same conversation."""
        response = asyncio.run(client.ask("Hello"))
        asyncio.run(client.ask("Again", str(response.conversation_id)))
        assert len(client.get_conversation(response.conversation_id)) == 4

    def test_ask_parameters_and_model(self, service: FakeCompletionService) -> None:
        """Test that per-call overrides merge with the defaults."""
        settings = make_settings(default_parameters={"temperature": 0.2, "max_tokens": 100})
        client = ChatClient(service, settings=settings)

        asyncio.run(client.ask("Hello", parameters=ChatParameters(max_tokens=5), model="other"))

        request = service.requests[-1]
        assert request.model == "other"
        assert request.parameters == ChatParameters(temperature=0.2, max_tokens=5)

    def test_ask_rejects_empty_message_without_calling_service(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that invalid input never reaches the service."""
        with pytest.raises(InvalidArgumentError):
            asyncio.run(client.ask(""))
        with pytest.raises(InvalidArgumentError):
            asyncio.run(client.ask("Hello", "bogus-id"))
        assert service.requests == []

    def test_delete_conversation(self, client: ChatClient) -> None:
        """Test that a deleted conversation reads as empty."""
        response = asyncio.run(client.ask("Hello"))

        asyncio.run(client.delete_conversation(response.conversation_id))

        assert client.get_conversation(response.conversation_id) == []

    def test_get_unknown_or_malformed_conversation(self, client: ChatClient) -> None:
        """Test that get_conversation never fails."""
        assert client.get_conversation(uuid4()) == []
        assert client.get_conversation("not-a-uuid") == []

    def test_expired_conversation_reads_empty(
        self, client: ChatClient, clock: FakeClock
    ) -> None:
        """Test that an idle conversation expires without delete."""
        response = asyncio.run(client.ask("Hello"))

        clock.advance(client.settings.message_expiration.total_seconds() + 1)

        assert client.get_conversation(response.conversation_id) == []

    def test_async_context_manager_closes_service(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that leaving the context closes the collaborator."""

        async def scenario() -> None:
            async with client:
                pass

        asyncio.run(scenario())
        assert service.closed is True


class TestUpstreamFailures:
    """Test suite for failed completions."""

    def test_failure_raises_and_keeps_history(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that a failed ask propagates and does not touch history."""
        conversation_id = asyncio.run(client.setup("sys"))
        service.replies = [UpstreamError(UpstreamErrorKind.SERVER, "boom", status_code=500)]

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(client.ask("Hello", conversation_id))

        assert excinfo.value.kind is UpstreamErrorKind.SERVER
        assert _contents(client.get_conversation(conversation_id)) == ["sys"]

    def test_retry_after_failure_sends_message_once(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that a failed turn leaves no orphaned user message behind."""
        conversation_id = asyncio.run(client.setup("sys"))
        service.replies = [UpstreamError(UpstreamErrorKind.NETWORK, "reset"), "ok"]

        with pytest.raises(UpstreamError):
            asyncio.run(client.ask("Hello", conversation_id))
        asyncio.run(client.ask("Hello", conversation_id))

        assert _contents(client.get_conversation(conversation_id)) == ["sys", "Hello", "ok"]

    def test_degraded_response_when_not_throwing(
        self, service: FakeCompletionService
    ) -> None:
        """Test that errors become responses when throwing is disabled."""
        client = ChatClient(service, settings=make_settings(throw_exception_on_error=False))
        service.replies = [UpstreamError(UpstreamErrorKind.AUTH, "bad key", status_code=401)]

        response = asyncio.run(client.ask("Hello"))

        assert not response.is_successful
        assert response.message is None
        assert response.content == ""
        assert response.error.kind is UpstreamErrorKind.AUTH
        assert response.error.status_code == 401
        assert client.get_conversation(response.conversation_id) == []

    def test_cancelled_ask_commits_nothing(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that cancelling an in-flight ask leaves history untouched."""
        conversation_id = asyncio.run(client.setup("sys"))

        async def scenario() -> None:
            service.gate = asyncio.Event()
            task = asyncio.create_task(client.ask("Hello", conversation_id))
            await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert _contents(client.get_conversation(conversation_id)) == ["sys"]
        assert client.cache._locks == {}

    def test_slow_ask_outliving_expiration_keeps_history(
        self, client: ChatClient, service: FakeCompletionService, clock: FakeClock
    ) -> None:
        """Test that a turn still in flight past the window does not lose the system message."""
        conversation_id = asyncio.run(client.setup("sys"))

        async def scenario() -> None:
            service.gate = asyncio.Event()
            task = asyncio.create_task(client.ask("Hello", conversation_id))
            await asyncio.sleep(0)
            clock.advance(client.cache.expiration.total_seconds() * 2)
            service.gate.set()
            await task

        asyncio.run(scenario())

        assert _contents(client.get_conversation(conversation_id)) == [
            "sys",
            "Hello",
            "reply to Hello",
        ]


class TestConcurrency:
    """Test suite for concurrent asks."""

    def test_concurrent_asks_on_one_conversation_keep_both_turns(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that same-id asks serialize and neither turn is lost."""
        conversation_id = asyncio.run(client.setup("sys"))

        async def scenario() -> None:
            service.gate = asyncio.Event()
            first = asyncio.create_task(client.ask("one", conversation_id))
            second = asyncio.create_task(client.ask("two", conversation_id))
            await asyncio.sleep(0.01)
            # Only the first ask may be waiting on the service.
            assert len(service.requests) == 1
            service.gate.set()
            await asyncio.gather(first, second)

        asyncio.run(scenario())

        assert _contents(client.get_conversation(conversation_id)) == [
            "sys",
            "one",
            "reply to one",
            "two",
            "reply to two",
        ]
        assert _contents(list(service.requests[1].messages)) == [
            "sys",
            "one",
            "reply to one",
            "two",
        ]

    def test_different_conversations_run_concurrently(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that a pending ask does not block another conversation."""

        async def scenario() -> None:
            service.gate = asyncio.Event()
            first = asyncio.create_task(client.ask("one"))
            second = asyncio.create_task(client.ask("two"))
            await asyncio.sleep(0.01)
            assert len(service.requests) == 2
            service.gate.set()
            await asyncio.gather(first, second)

        asyncio.run(scenario())


class TestAskStream:
    """Test suite for streamed asks."""

    def test_deltas_concatenate_to_committed_message(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that the streamed pieces equal the reply kept in history."""
        service.streams = [["The ", "quick ", "brown ", "fox"]]

        responses = asyncio.run(_collect(client.ask_stream("Tell me something")))

        conversation_id = responses[0].conversation_id
        assert all(r.conversation_id == conversation_id for r in responses)
        assert all(r.is_partial for r in responses)
        streamed = "".join(r.content for r in responses)
        history = client.get_conversation(conversation_id)
        assert streamed == "The quick brown fox"
        assert history[-1].role is Role.ASSISTANT
        assert history[-1].content == streamed
        assert responses[-1].usage is not None

    def test_stream_continues_conversation(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that a streamed ask replays history like a single-shot ask."""
        conversation_id = asyncio.run(client.setup("sys"))
        service.streams = [["A"]]

        asyncio.run(_collect(client.ask_stream("a", conversation_id)))

        assert _contents(list(service.requests[-1].messages)) == ["sys", "a"]
        assert _contents(client.get_conversation(conversation_id)) == ["sys", "a", "A"]

    def test_stream_validates_immediately(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that bad input fails before any iteration."""
        with pytest.raises(InvalidArgumentError):
            client.ask_stream("")
        assert service.requests == []

    def test_stream_without_end_marker_commits_nothing(self) -> None:
        """Test that an aborted stream raises and leaves history alone."""
        service = FakeCompletionService(streams=[["par", "tial"]], terminate=False)
        client = ChatClient(service, settings=make_settings())
        conversation_id = asyncio.run(client.setup("sys"))

        with pytest.raises(UpstreamError):
            asyncio.run(_collect(client.ask_stream("Hello", conversation_id)))

        assert _contents(client.get_conversation(conversation_id)) == ["sys"]

    def test_stream_failure_degraded(self, service: FakeCompletionService) -> None:
        """Test that a failing stream ends with an error response when not throwing."""
        client = ChatClient(service, settings=make_settings(throw_exception_on_error=False))
        service.streams = [["par", UpstreamError(UpstreamErrorKind.NETWORK, "dropped")]]

        responses = asyncio.run(_collect(client.ask_stream("Hello")))

        assert [r.content for r in responses] == ["par", ""]
        assert responses[-1].error.kind is UpstreamErrorKind.NETWORK
        assert client.get_conversation(responses[0].conversation_id) == []

    def test_cancelled_stream_commits_nothing(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that a consumer abandoning the stream drops the partial reply."""
        conversation_id = asyncio.run(client.setup("sys"))
        service.streams = [["a", "b", "c"]]

        async def scenario() -> None:
            stream = client.ask_stream("Hello", conversation_id)
            await stream.__anext__()
            await stream.aclose()

        asyncio.run(scenario())

        assert _contents(client.get_conversation(conversation_id)) == ["sys"]
        assert client.cache._locks == {}

    def test_each_call_issues_new_request(
        self, client: ChatClient, service: FakeCompletionService
    ) -> None:
        """Test that re-invoking ask_stream makes a new upstream call."""
        service.streams = [["one"], ["two"]]

        first = asyncio.run(_collect(client.ask_stream("Hello")))
        asyncio.run(_collect(client.ask_stream("Hello", first[0].conversation_id)))

        assert len(service.requests) == 2
        assert _contents(client.get_conversation(first[0].conversation_id)) == [
            "Hello",
            "one",
            "Hello",
            "two",
        ]
