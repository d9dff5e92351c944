"""Tests for :mod:`notechat.ai.note_tools`."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from notechat.ai.note_tools import NOTE_TOOLS, NoteToolError, NoteToolExecutor, format_block, openai_tools
from notechat.delivery.errors import ClientError, ServerError


class _NotesServer:
    """Minimal in-memory notes API served through ``httpx.MockTransport``."""

    def __init__(self, notes: list[dict[str, Any]] | None = None, *, status: int | None = None) -> None:
        self.notes = {note["id"]: dict(note) for note in notes or []}
        self.status = status
        self.requests: list[tuple[str, str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if self.status is not None:
            return httpx.Response(self.status, json={"error": "nope"})
        path = request.url.path
        if path == "/api/notes" and request.method == "GET":
            return httpx.Response(200, json=list(self.notes.values()))
        if path == "/api/notes" and request.method == "POST":
            note_id = f"n{len(self.notes) + 1}"
            self.notes[note_id] = {"id": note_id, **body}
            return httpx.Response(201, json=self.notes[note_id])
        note_id = path.rsplit("/", 1)[-1]
        if note_id not in self.notes:
            return httpx.Response(404, json={"error": "Note not found"})
        if request.method == "PUT":
            self.notes[note_id].update(body)
        return httpx.Response(200, json=self.notes[note_id])


def _executor(server: _NotesServer) -> tuple[NoteToolExecutor, httpx.AsyncClient]:
    client = httpx.AsyncClient(base_url="http://notes.test", transport=httpx.MockTransport(server))
    return NoteToolExecutor("http://notes.test", client=client), client


def test_openai_tools_describe_every_note_action() -> None:
    tools = openai_tools()

    assert [tool["function"]["name"] for tool in tools] == [spec.name for spec in NOTE_TOOLS]
    assert all(tool["type"] == "function" for tool in tools)
    assert tools[0]["function"]["parameters"]["required"] == ["title", "content"]


class TestExecutor:
    @pytest.mark.asyncio
    async def test_create_note(self) -> None:
        server = _NotesServer()
        executor, client = _executor(server)

        result = await executor("create_note", {"title": "Ideas", "content": "- one", "collection_id": "col-1"})

        assert result == {"success": True, "noteId": "n1"}
        assert server.notes["n1"]["collectionId"] == "col-1"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_update_note_appends_to_existing_content(self) -> None:
        server = _NotesServer([{"id": "n1", "title": "T", "content": "first"}])
        executor, client = _executor(server)

        await executor("update_note", {"note_id": "n1", "content": "second", "update_type": "append"})

        assert server.notes["n1"]["content"] == "first\nsecond"
        assert [method for method, _path, _body in server.requests] == ["GET", "PUT"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_update_note_requires_changes(self) -> None:
        executor, client = _executor(_NotesServer([{"id": "n1", "content": "x"}]))

        with pytest.raises(NoteToolError):
            await executor("update_note", {"note_id": "n1"})
        await client.aclose()

    @pytest.mark.asyncio
    async def test_edit_selection_formats_replacement(self) -> None:
        server = _NotesServer([{"id": "n1", "content": "intro\nprint(1)\noutro"}])
        executor, client = _executor(server)

        result = await executor(
            "edit_selection",
            {
                "note_id": "n1",
                "original_text": "print(1)",
                "new_text": "print(2)",
                "output_format": "code",
                "code_language": "python",
            },
        )

        assert result["updatedText"] == "```python\nprint(2)\n```"
        assert server.notes["n1"]["content"] == "intro\n```python\nprint(2)\n```\noutro"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_edit_selection_with_stale_text(self) -> None:
        executor, client = _executor(_NotesServer([{"id": "n1", "content": "changed"}]))

        with pytest.raises(NoteToolError):
            await executor("edit_selection", {"note_id": "n1", "original_text": "gone", "new_text": "x"})
        await client.aclose()

    @pytest.mark.asyncio
    async def test_search_notes_filters_and_limits(self) -> None:
        notes = [
            {"id": "n1", "title": "Garden plan", "content": "tomatoes"},
            {"id": "n2", "title": "Groceries", "content": "garden gloves"},
            {"id": "n3", "title": "Work", "content": "meetings"},
        ]
        executor, client = _executor(_NotesServer(notes))

        both = await executor("search_notes", {"query": "GARDEN"})
        titles = await executor("search_notes", {"query": "garden", "search_type": "title"})
        limited = await executor("search_notes", {"query": "garden", "limit": 1})

        assert [item["id"] for item in both["results"]] == ["n1", "n2"]
        assert [item["id"] for item in titles["results"]] == ["n1"]
        assert len(limited["results"]) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unknown_tool_and_missing_arguments(self) -> None:
        executor, client = _executor(_NotesServer())

        with pytest.raises(NoteToolError):
            await executor("delete_everything", {})
        with pytest.raises(NoteToolError):
            await executor("create_note", {"content": "no title"})
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_errors_use_delivery_taxonomy(self) -> None:
        executor, client = _executor(_NotesServer())

        with pytest.raises(ClientError):
            await executor("update_note", {"note_id": "missing", "title": "x"})
        await client.aclose()

        executor, client = _executor(_NotesServer(status=502))
        with pytest.raises(ServerError):
            await executor("search_notes", {"query": "x"})
        await client.aclose()


@pytest.mark.parametrize(
    "output_format, expected",
    [
        ("preserve", "a\nb"),
        ("list", "- a\n- b"),
        ("heading", "# a\nb"),
        ("quote", "> a\n> b"),
        ("code", "```\na\nb\n```"),
    ],
)
def test_format_block(output_format: str, expected: str) -> None:
    assert format_block("a\nb", output_format) == expected
