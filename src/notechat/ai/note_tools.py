"""Note actions the assistant may propose, and their HTTP executor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, cast

import httpx
from openai.types.chat import ChatCompletionToolParam

from ..delivery.errors import classify_exception

LOGGER = logging.getLogger(__name__)

_UPDATE_MODES = ("replace", "append", "prepend")


@dataclass(slots=True, frozen=True)
class NoteToolSpec:
    """Tool metadata formatted for OpenAI function calling."""

    name: str
    description: str
    parameters: Mapping[str, Any]

    def as_openai_tool(self) -> ChatCompletionToolParam:
        return cast(
            ChatCompletionToolParam,
            {
                "type": "function",
                "function": {
                    "name": self.name,
                    "description": self.description,
                    "parameters": dict(self.parameters),
                },
            },
        )


CREATE_NOTE = NoteToolSpec(
    name="create_note",
    description=(
        "Create a new note with the given title and markdown content. "
        "Requires user confirmation."
    ),
    parameters={
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "The title of the note"},
            "content": {"type": "string", "description": "The note body in markdown"},
            "collection_id": {"type": "string", "description": "Optional collection to file the note under"},
        },
        "required": ["title", "content"],
    },
)

UPDATE_NOTE = NoteToolSpec(
    name="update_note",
    description="Update an existing note's title or content. Requires user confirmation.",
    parameters={
        "type": "object",
        "properties": {
            "note_id": {"type": "string", "description": "The ID of the note to update"},
            "title": {"type": "string", "description": "New title (optional)"},
            "content": {"type": "string", "description": "New markdown content (optional)"},
            "update_type": {
                "type": "string",
                "enum": list(_UPDATE_MODES),
                "description": "Replace the body, or append/prepend to it",
                "default": "replace",
            },
        },
        "required": ["note_id"],
    },
)

EDIT_SELECTION = NoteToolSpec(
    name="edit_selection",
    description="Edit a highlighted passage inside a note. Requires user confirmation.",
    parameters={
        "type": "object",
        "properties": {
            "note_id": {"type": "string", "description": "The note containing the selection"},
            "original_text": {"type": "string", "description": "The exact text to replace"},
            "new_text": {"type": "string", "description": "The replacement text"},
            "output_format": {
                "type": "string",
                "enum": ["preserve", "code", "list", "heading", "quote"],
                "default": "preserve",
            },
            "code_language": {"type": "string", "description": "Language when output_format is code"},
            "edit_type": {"type": "string", "enum": list(_UPDATE_MODES), "default": "replace"},
        },
        "required": ["note_id", "original_text", "new_text"],
    },
)

SEARCH_NOTES = NoteToolSpec(
    name="search_notes",
    description="Search notes by title or content.",
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Text to look for"},
            "limit": {"type": "integer", "minimum": 1, "maximum": 20, "default": 5},
            "search_type": {"type": "string", "enum": ["title", "content", "both"], "default": "both"},
        },
        "required": ["query"],
    },
)

NOTE_TOOLS: tuple[NoteToolSpec, ...] = (CREATE_NOTE, UPDATE_NOTE, EDIT_SELECTION, SEARCH_NOTES)


def openai_tools() -> List[ChatCompletionToolParam]:
    return [spec.as_openai_tool() for spec in NOTE_TOOLS]


class NoteToolError(ValueError):
    """Raised for tool arguments the executor cannot act on."""


class NoteToolExecutor:
    """Runs confirmed note actions against the notes HTTP API.

    Instances are callable with ``(tool_name, args)`` so they plug straight
    into :meth:`ToolCallGate.execute`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None
        self._handlers = {
            CREATE_NOTE.name: self.create_note,
            UPDATE_NOTE.name: self.update_note,
            EDIT_SELECTION.name: self.edit_selection,
            SEARCH_NOTES.name: self.search_notes,
        }

    async def __call__(self, tool_name: str, args: Mapping[str, Any]) -> Dict[str, Any]:
        handler = self._handlers.get(tool_name)
        if handler is None:
            raise NoteToolError(f"Unknown tool: {tool_name}")
        LOGGER.info("Executing note tool %s", tool_name)
        return await handler(dict(args))

    async def create_note(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        title = _required(args, "title")
        body: Dict[str, Any] = {"title": title, "content": str(args.get("content") or "")}
        if args.get("collection_id"):
            body["collectionId"] = args["collection_id"]
        note = await self._request("POST", "/api/notes", json=body)
        return {"success": True, "noteId": note.get("id")}

    async def update_note(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        note_id = _required(args, "note_id")
        mode = str(args.get("update_type") or "replace")
        if mode not in _UPDATE_MODES:
            raise NoteToolError(f"Unsupported update_type: {mode}")
        body: Dict[str, Any] = {}
        if args.get("title"):
            body["title"] = args["title"]
        content = args.get("content")
        if content is not None:
            if mode == "replace":
                body["content"] = str(content)
            else:
                existing = await self._fetch_content(note_id)
                body["content"] = _combine(existing, str(content), mode)
        if not body:
            raise NoteToolError("update_note needs a title or content")
        await self._request("PUT", f"/api/notes/{note_id}", json=body)
        return {"success": True, "noteId": note_id}

    async def edit_selection(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        note_id = _required(args, "note_id")
        original = _required(args, "original_text")
        replacement = format_block(
            str(args.get("new_text") or ""),
            str(args.get("output_format") or "preserve"),
            language=args.get("code_language"),
        )
        mode = str(args.get("edit_type") or "replace")
        if mode not in _UPDATE_MODES:
            raise NoteToolError(f"Unsupported edit_type: {mode}")
        content = await self._fetch_content(note_id)
        if original not in content:
            raise NoteToolError("The selected text no longer appears in the note")
        updated_text = _combine(original, replacement, mode)
        await self._request(
            "PUT",
            f"/api/notes/{note_id}",
            json={"content": content.replace(original, updated_text, 1)},
        )
        return {"success": True, "noteId": note_id, "updatedText": updated_text}

    async def search_notes(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        query = _required(args, "query").lower()
        limit = max(1, min(20, int(args.get("limit") or 5)))
        scope = str(args.get("search_type") or "both")
        notes = await self._request("GET", "/api/notes")
        results = []
        for note in notes if isinstance(notes, list) else []:
            title = str(note.get("title") or "")
            content = str(note.get("content") or "")
            haystacks = {"title": [title], "content": [content]}.get(scope, [title, content])
            if any(query in text.lower() for text in haystacks):
                results.append(
                    {
                        "id": note.get("id"),
                        "title": title,
                        "excerpt": content[:200],
                        "updatedAt": note.get("updatedAt"),
                    }
                )
            if len(results) >= limit:
                break
        return {"success": True, "results": results}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _fetch_content(self, note_id: str) -> str:
        note = await self._request("GET", f"/api/notes/{note_id}")
        return str(note.get("content") or "")

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_exception(exc) from exc
        return response.json()


def format_block(text: str, output_format: str, *, language: Any = None) -> str:
    """Render ``text`` as the requested markdown block type."""

    if output_format == "code":
        return f"```{language or ''}\n{text}\n```"
    if output_format == "list":
        return "\n".join(f"- {line}" for line in text.splitlines() if line.strip())
    if output_format == "heading":
        return f"# {text.strip()}"
    if output_format == "quote":
        return "\n".join(f"> {line}" for line in text.splitlines())
    return text


def _combine(existing: str, addition: str, mode: str) -> str:
    if mode == "append":
        return f"{existing}\n{addition}" if existing else addition
    if mode == "prepend":
        return f"{addition}\n{existing}" if existing else addition
    return addition


def _required(args: Mapping[str, Any], key: str) -> str:
    value = args.get(key)
    if value is None or not str(value).strip():
        raise NoteToolError(f"Missing required argument: {key}")
    return str(value)


__all__ = [
    "CREATE_NOTE",
    "EDIT_SELECTION",
    "NOTE_TOOLS",
    "NoteToolError",
    "NoteToolExecutor",
    "NoteToolSpec",
    "SEARCH_NOTES",
    "UPDATE_NOTE",
    "format_block",
    "openai_tools",
]
