"""Tests for :mod:`notechat.services.messages_api`."""

from __future__ import annotations

import json

import httpx
import pytest

from notechat.chat.message_model import Message, QueuedEntry
from notechat.delivery.errors import ClientError, NetworkError, RateLimitError, ServerError
from notechat.services.messages_api import MessagesAPI


def _api(handler) -> tuple[MessagesAPI, httpx.AsyncClient]:
    client = httpx.AsyncClient(base_url="http://notes.test", transport=httpx.MockTransport(handler))
    return MessagesAPI("http://notes.test", client=client), client


class TestCreateMessage:
    @pytest.mark.asyncio
    async def test_posts_message_and_returns_server_copy(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = json.loads(request.content)["message"]
            return httpx.Response(200, json={"message": {"id": "srv-7", **body}})

        api, client = _api(handler)
        pending = Message.pending("user", "hello", metadata={"source": "composer"})

        saved = await api.create_message("c1", pending)

        assert saved.server_id == "srv-7"
        assert saved.content == "hello"
        assert saved.is_confirmed
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/chats/c1/messages"
        sent = json.loads(seen[0].content)["message"]
        assert sent["tempId"] == pending.temp_id
        assert sent["metadata"] == {"source": "composer"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_deliver_entry_uses_entry_conversation(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"id": "srv-1", "role": "user", "content": "hi"})

        api, client = _api(handler)
        entry = QueuedEntry(conversation_id="c9", message=Message.pending("user", "hi"))

        saved = await api.deliver_entry(entry)

        assert saved.server_id == "srv-1"
        assert paths == ["/api/chats/c9/messages"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_malformed_response_is_a_client_error(self) -> None:
        api, client = _api(lambda request: httpx.Response(200, json={"message": {"content": "no id"}}))

        with pytest.raises(ClientError):
            await api.create_message("c1", Message.pending("user", "hi"))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_conversation_id(self) -> None:
        api, client = _api(lambda request: httpx.Response(200, json={}))

        with pytest.raises(ValueError):
            await api.create_message("", Message.pending("user", "hi"))
        await client.aclose()


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, expected",
        [(400, ClientError), (401, ClientError), (500, ServerError), (503, ServerError), (429, RateLimitError)],
    )
    async def test_status_codes_map_to_taxonomy(self, status, expected) -> None:
        api, client = _api(lambda request: httpx.Response(status, json={"error": "nope"}))

        with pytest.raises(expected) as excinfo:
            await api.create_message("c1", Message.pending("user", "hi"))

        assert excinfo.value.message == "nope"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self) -> None:
        api, client = _api(lambda request: httpx.Response(429, headers={"Retry-After": "7"}, text="slow down"))

        with pytest.raises(RateLimitError) as excinfo:
            await api.create_message("c1", Message.pending("user", "hi"))

        assert excinfo.value.retry_after == 7.0
        assert excinfo.value.message == "slow down"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_failure_is_a_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        api, client = _api(handler)

        with pytest.raises(NetworkError):
            await api.create_message("c1", Message.pending("user", "hi"))
        await client.aclose()


class TestListMessages:
    @pytest.mark.asyncio
    async def test_lists_page_with_cursor(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "messages": [
                        {"id": "srv-1", "role": "user", "content": "one"},
                        {"role": "assistant", "content": "missing id"},
                        {"id": "srv-2", "role": "assistant", "content": "two"},
                    ],
                    "hasMore": True,
                    "nextCursor": "cur-2",
                },
            )

        api, client = _api(handler)

        page = await api.list_messages("c1", cursor="cur-1", limit=2)

        assert [message.server_id for message in page.messages] == ["srv-1", "srv-2"]
        assert page.has_more is True
        assert page.next_cursor == "cur-2"
        assert seen[0].url.params["cursor"] == "cur-1"
        assert seen[0].url.params["limit"] == "2"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_first_page_sends_no_cursor(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"messages": []})

        api, client = _api(handler)

        page = await api.list_messages("c1")

        assert page.messages == [] and page.has_more is False and page.next_cursor is None
        assert "cursor" not in seen[0].url.params
        await client.aclose()

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self) -> None:
        api, client = _api(lambda request: httpx.Response(200, json={"messages": []}))

        await api.aclose()

        assert not client.is_closed
        await client.aclose()
