"""HTTP client for the chat message persistence API."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from ..chat.message_model import Message, QueuedEntry
from ..chat.pagination import DEFAULT_PAGE_SIZE, MessagePage
from ..delivery.errors import ClientError, classify_exception, error_for_status, retry_after_seconds

LOGGER = logging.getLogger(__name__)


class MessagesAPI:
    """Creates and lists messages under ``/api/chats/{conversation_id}/messages``.

    Transport failures and error statuses are raised as delivery taxonomy
    errors so callers can hand this client straight to the retry engine.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=dict(headers) if headers else None,
        )
        self._owns_client = client is None

    async def create_message(self, conversation_id: str, message: Message) -> Message:
        """Persist ``message`` and return the server copy with its assigned id."""

        data = await self._request(
            "POST",
            self._path(conversation_id),
            json={"message": message.to_payload()},
        )
        payload = data.get("message", data) if isinstance(data, Mapping) else None
        if not isinstance(payload, Mapping):
            raise ClientError(message="Malformed message response", status=200)
        try:
            saved = Message.from_server(payload)
        except ValueError as exc:
            raise ClientError(message=str(exc), status=200) from exc
        LOGGER.debug("Persisted message %s as %s", message.id, saved.server_id)
        return saved

    async def deliver_entry(self, entry: QueuedEntry) -> Message:
        """Redeliver a queued entry; used as the offline queue's ``deliver`` hook."""

        return await self.create_message(entry.conversation_id, entry.message)

    async def list_messages(
        self,
        conversation_id: str,
        *,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> MessagePage:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        data = await self._request("GET", self._path(conversation_id), params=params)
        if not isinstance(data, Mapping):
            raise ClientError(message="Malformed history response", status=200)
        messages = []
        for item in data.get("messages") or []:
            try:
                messages.append(Message.from_server(item))
            except (TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed message in %s: %s", conversation_id, exc)
        return MessagePage(
            messages=messages,
            has_more=bool(data.get("hasMore")),
            next_cursor=data.get("nextCursor") or None,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise classify_exception(exc) from exc
        if response.status_code >= 400:
            raise error_for_status(
                response.status_code,
                _error_text(response),
                retry_after=retry_after_seconds(response),
            )
        return response.json()

    @staticmethod
    def _path(conversation_id: str) -> str:
        if not conversation_id:
            raise ValueError("conversation_id is required")
        return f"/api/chats/{conversation_id}/messages"


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, Mapping) and isinstance(data.get("error"), str):
        return data["error"]
    return response.text.strip() or f"HTTP error! status: {response.status_code}"


__all__ = ["MessagesAPI"]
