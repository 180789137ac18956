"""
Generation Tests

Covers SSE stream parsing, error mapping, network retries, answer
persistence and cancellation.
"""

import asyncio
import json
import uuid
from unittest.mock import AsyncMock

import httpx
import pytest

from concierge_rag.chat.service import ChatService
from concierge_rag.chat.streamer import NO_CONTEXT, GenerationStreamer, build_messages
from concierge_rag.core.errors import ApiKeyNotConfiguredError, GenerationProviderError
from concierge_rag.db.conversations import ConversationStore
from concierge_rag.db.model_configs import GenerationConfig, ModelConfigService
from concierge_rag.db.vector_store import ChunkMatch
from concierge_rag.keys.store import ApiKeyStore
from concierge_rag.llm.client import GenerationClient, is_network_error
from concierge_rag.providers.registry import get_provider
from concierge_rag.retrieval.retriever import Retriever

API_KEY = "sk-test-0123456789abcdefghij"

HELLO_STREAM = (
    'data: {"choices":[{"delta":{"content":"Hel"}}]}\n'
    'data: {"choices":[{"delta":{"content":"lo"}}]}\n'
    "data: [DONE]\n"
)

CONFIG = GenerationConfig(provider="openai", model="gpt-4o-mini")


def sse_transport(body, status=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(
            status,
            content=body.encode("utf-8") if isinstance(body, str) else body,
            headers={"content-type": "text/event-stream"},
        )
    return httpx.MockTransport(handler)


def client_for(transport, **kwargs) -> GenerationClient:
    kwargs.setdefault("retry_wait", 0)
    return GenerationClient(transport=transport, **kwargs)


async def collect(stream):
    return [delta async for delta in stream]


@pytest.fixture
def conversations():
    return AsyncMock(spec=ConversationStore)


# ---------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------

class TestBuildMessages:
    def test_context_history_and_query(self):
        chunks = [
            ChunkMatch("Open daily.", uuid.uuid4(), {}, 0.9),
            ChunkMatch("Closed on holidays.", uuid.uuid4(), {}, 0.8),
        ]
        history = [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
        ]

        messages = build_messages("When are you open?", history, chunks)

        assert messages[0]["role"] == "system"
        assert messages[0]["content"].endswith("Open daily.\n\nClosed on holidays.")
        assert messages[1:3] == history
        assert messages[-1] == {"role": "user", "content": "When are you open?"}

    def test_no_context_placeholder(self):
        messages = build_messages("Hi", [], [])
        assert messages[0]["content"].endswith(NO_CONTEXT)
        assert len(messages) == 2


# ---------------------------------------------------------------------
# Stream client
# ---------------------------------------------------------------------

class TestGenerationClient:
    @pytest.mark.asyncio
    async def test_deltas_in_order(self):
        seen = []
        client = client_for(sse_transport(HELLO_STREAM, seen=seen))

        deltas = await collect(
            client.stream(get_provider("openai"), "gpt-4o-mini", [{"role": "user", "content": "hi"}], API_KEY)
        )

        assert deltas == ["Hel", "lo"]
        body = json.loads(seen[0].content)
        assert body["stream"] is True
        assert str(seen[0].url) == "https://api.openai.com/v1/chat/completions"

    @pytest.mark.asyncio
    async def test_ignores_comments_and_blank_lines(self):
        body = ": keep-alive\n\n" + HELLO_STREAM.replace("\n", "\r\n")
        deltas = await collect(
            client_for(sse_transport(body)).stream(get_provider("openai"), "m", [], API_KEY)
        )
        assert deltas == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_multibyte_characters_split_across_chunks(self):
        payload = 'data: {"choices":[{"delta":{"content":"café"}}]}\ndata: [DONE]\n'.encode("utf-8")
        split = payload.index("é".encode("utf-8")) + 1

        def handler(request):
            return httpx.Response(200, stream=_ByteStream([payload[:split], payload[split:]]))

        deltas = await collect(
            client_for(httpx.MockTransport(handler)).stream(get_provider("openai"), "m", [], API_KEY)
        )
        assert deltas == ["café"]

    @pytest.mark.asyncio
    async def test_malformed_lines_within_budget_are_skipped(self):
        body = "data: {not json\n" * 2 + HELLO_STREAM
        deltas = await collect(
            client_for(sse_transport(body), max_malformed_chunks=5).stream(
                get_provider("openai"), "m", [], API_KEY
            )
        )
        assert deltas == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_malformed_budget_exceeded(self):
        body = "data: {not json\n" * 6 + HELLO_STREAM
        client = client_for(sse_transport(body), max_malformed_chunks=5)

        with pytest.raises(GenerationProviderError) as exc_info:
            await collect(client.stream(get_provider("openai"), "m", [], API_KEY))

        assert exc_info.value.kind == "stream"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, kind",
        [
            (401, "authentication"),
            (403, "permission"),
            (404, "not_found"),
            (429, "rate_limit"),
            (500, "provider"),
        ],
    )
    async def test_http_errors_are_classified_and_not_retried(self, status, kind):
        seen = []
        client = client_for(sse_transport('{"error": "nope"}', status=status, seen=seen))

        with pytest.raises(GenerationProviderError) as exc_info:
            await collect(client.stream(get_provider("openai"), "m", [], API_KEY))

        assert exc_info.value.kind == kind
        assert exc_info.value.status_code == status
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                raise httpx.ConnectError("connection reset by peer", request=request)
            return httpx.Response(200, content=HELLO_STREAM.encode())

        client = client_for(httpx.MockTransport(handler), max_network_retries=3)
        deltas = await collect(client.stream(get_provider("openai"), "m", [], API_KEY))

        assert deltas == ["Hel", "lo"]
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_network_retries_exhausted(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = client_for(httpx.MockTransport(handler), max_network_retries=3)

        with pytest.raises(GenerationProviderError) as exc_info:
            await collect(client.stream(get_provider("openai"), "m", [], API_KEY))

        assert exc_info.value.kind == "network"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_error_event_in_stream(self):
        body = 'data: {"error": {"message": "context length exceeded"}}\n'
        with pytest.raises(GenerationProviderError, match="context length exceeded"):
            await collect(
                client_for(sse_transport(body)).stream(get_provider("openai"), "m", [], API_KEY)
            )

    @pytest.mark.asyncio
    async def test_cohere_stream_events(self):
        body = (
            'data: {"type":"message-start"}\n'
            'data: {"type":"content-delta","delta":{"message":{"content":{"text":"Hi"}}}}\n'
            'data: {"type":"message-end"}\n'
            'data: {"type":"content-delta","delta":{"message":{"content":{"text":"late"}}}}\n'
        )
        deltas = await collect(
            client_for(sse_transport(body)).stream(get_provider("cohere"), "command-r", [], API_KEY)
        )
        assert deltas == ["Hi"]

    @pytest.mark.asyncio
    async def test_stream_closed_without_end_marker(self):
        body = 'data: {"choices":[{"delta":{"content":"Hel"}}]}\n'
        received = []

        with pytest.raises(GenerationProviderError) as exc_info:
            async for delta in client_for(sse_transport(body)).stream(
                get_provider("openai"), "m", [], API_KEY
            ):
                received.append(delta)

        assert received == ["Hel"]
        assert exc_info.value.kind == "stream"

    @pytest.mark.asyncio
    async def test_final_done_without_trailing_newline(self):
        body = HELLO_STREAM.rstrip("\n")
        deltas = await collect(
            client_for(sse_transport(body)).stream(get_provider("openai"), "m", [], API_KEY)
        )
        assert deltas == ["Hel", "lo"]

    def test_network_error_detection(self):
        assert is_network_error(httpx.ReadTimeout("read timed out"))
        assert is_network_error(RuntimeError("Connection reset by peer"))
        assert not is_network_error(GenerationProviderError.from_status(401, ""))


class _ByteStream(httpx.AsyncByteStream):
    def __init__(self, parts):
        self._parts = parts

    async def __aiter__(self):
        for part in self._parts:
            yield part


# ---------------------------------------------------------------------
# Streamer
# ---------------------------------------------------------------------

class TestGenerationStreamer:
    @pytest.mark.asyncio
    async def test_persists_concatenated_answer(self, conversations):
        conversation_id = uuid.uuid4()
        streamer = GenerationStreamer(client_for(sse_transport(HELLO_STREAM)), conversations)

        deltas = await collect(
            streamer.generate(conversation_id, "hi", [], [], CONFIG, API_KEY)
        )

        assert deltas == ["Hel", "lo"]
        conversations.add_message.assert_awaited_once_with(conversation_id, "assistant", "Hello")

    @pytest.mark.asyncio
    async def test_cancel_after_first_delta_persists_nothing(self, conversations):
        streamer = GenerationStreamer(client_for(sse_transport(HELLO_STREAM)), conversations)
        cancel = asyncio.Event()
        received = []

        async for delta in streamer.generate(uuid.uuid4(), "hi", [], [], CONFIG, API_KEY, cancel_event=cancel):
            received.append(delta)
            cancel.set()

        assert received == ["Hel"]
        conversations.add_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_abandoned_stream_persists_nothing(self, conversations):
        streamer = GenerationStreamer(client_for(sse_transport(HELLO_STREAM)), conversations)

        stream = streamer.generate(uuid.uuid4(), "hi", [], [], CONFIG, API_KEY)
        assert await stream.__anext__() == "Hel"
        await stream.aclose()

        conversations.add_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_stream_persists_nothing(self, conversations):
        body = 'data: {"choices":[{"delta":{"content":"Hel"}}]}\ndata: {"error": "boom"}\n'
        streamer = GenerationStreamer(client_for(sse_transport(body)), conversations)

        with pytest.raises(GenerationProviderError):
            await collect(streamer.generate(uuid.uuid4(), "hi", [], [], CONFIG, API_KEY))

        conversations.add_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_truncated_stream_persists_nothing(self, conversations):
        body = 'data: {"choices":[{"delta":{"content":"Hel"}}]}\n'
        streamer = GenerationStreamer(client_for(sse_transport(body)), conversations)

        with pytest.raises(GenerationProviderError):
            await collect(streamer.generate(uuid.uuid4(), "hi", [], [], CONFIG, API_KEY))

        conversations.add_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_answer_is_not_persisted(self, conversations):
        streamer = GenerationStreamer(client_for(sse_transport("data: [DONE]\n")), conversations)

        assert await collect(streamer.generate(uuid.uuid4(), "hi", [], [], CONFIG, API_KEY)) == []
        conversations.add_message.assert_not_awaited()


# ---------------------------------------------------------------------
# Chat service
# ---------------------------------------------------------------------

class TestChatService:
    @pytest.fixture
    def service_parts(self, conversations):
        retriever = AsyncMock(spec=Retriever)
        retriever.retrieve.return_value = []
        configs = AsyncMock(spec=ModelConfigService)
        configs.get_generation_config.return_value = CONFIG
        keys = AsyncMock(spec=ApiKeyStore)
        keys.get_key.return_value = API_KEY
        conversations.get_history.return_value = [{"role": "user", "content": "earlier"}]
        return retriever, configs, keys

    def _service(self, conversations, service_parts, body=HELLO_STREAM):
        retriever, configs, keys = service_parts
        return ChatService(
            conversations=conversations,
            retriever=retriever,
            model_configs=configs,
            keys=keys,
            streamer=GenerationStreamer(client_for(sse_transport(body)), conversations),
        )

    @pytest.mark.asyncio
    async def test_send_chat_turn_persists_both_messages(self, conversations, service_parts):
        conversation_id = uuid.uuid4()
        service = self._service(conversations, service_parts)

        deltas = await collect(service.send_chat_turn(conversation_id, "When are you open?"))

        assert deltas == ["Hel", "lo"]
        conversations.ensure_conversation.assert_awaited_once_with(conversation_id)
        assert [call.args for call in conversations.add_message.await_args_list] == [
            (conversation_id, "user", "When are you open?"),
            (conversation_id, "assistant", "Hello"),
        ]

    @pytest.mark.asyncio
    async def test_history_excludes_new_message(self, conversations, service_parts):
        turn = await self._service(conversations, service_parts).prepare(uuid.uuid4(), "new")
        assert turn.history == [{"role": "user", "content": "earlier"}]
        assert turn.message == "new"

    @pytest.mark.asyncio
    async def test_missing_embedding_key_answers_without_context(self, conversations, service_parts):
        retriever, _, _ = service_parts
        retriever.retrieve.side_effect = ApiKeyNotConfiguredError("cohere API key not configured")

        turn = await self._service(conversations, service_parts).prepare(uuid.uuid4(), "hi")

        assert turn.chunks == []

    @pytest.mark.asyncio
    async def test_missing_generation_key_fails_before_persisting(self, conversations, service_parts):
        _, _, keys = service_parts
        keys.get_key.side_effect = ApiKeyNotConfiguredError("openai API key not configured")

        with pytest.raises(ApiKeyNotConfiguredError):
            await self._service(conversations, service_parts).prepare(uuid.uuid4(), "hi")

        conversations.add_message.assert_not_awaited()
