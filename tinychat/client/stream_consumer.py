############################################################
#
# tinychat - Streaming LLM Chat Service
#
# stream_consumer.py: Client for the chat stream endpoint
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Client-side consumer for ``POST /api/chat/stream``.

Keeps a local :class:`ConversationView`. Sending a turn appends the user
message and an empty assistant placeholder carrying a temporary id, fills the
placeholder as fragments arrive, and swaps it for the saved server record
when the ``message_complete`` event echoes the same temporary id.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from tinychat.app.core.thinking import ThinkingParts, render_regions
from tinychat.app.logging_config import get_logger

logger = get_logger(__name__)

CONTENT_PREFIX = "0"
REASONING_PREFIX = "g"
COMPLETE_EVENT = "message_complete"


class ChatStreamError(Exception):
    """The server refused a chat turn."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


@dataclass
class SSEEvent:
    data: str
    event: str = "message"


class SSEDecoder:
    """Incremental Server-Sent Events parser.

    Feed it text in arbitrary chunks; it returns each event once its blank
    terminating line has arrived.
    """

    def __init__(self):
        self._buffer = ""
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, text: str) -> List[SSEEvent]:
        self._buffer += text.replace("\r\n", "\n")
        events = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            event = self._handle_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[SSEEvent]:
        """Emit any event left without a trailing blank line."""
        events = []
        if self._buffer:
            event = self._handle_line(self._buffer)
            self._buffer = ""
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _handle_line(self, line: str) -> Optional[SSEEvent]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> Optional[SSEEvent]:
        if not self._data:
            self._event = None
            return None
        event = SSEEvent(data="\n".join(self._data), event=self._event or "message")
        self._event = None
        self._data = []
        return event


@dataclass
class LocalMessage:
    """A message as the client sees it."""
    id: str
    role: str
    content: str = ""
    reasoning: Optional[str] = None
    model_id: Optional[str] = None
    created_at: Optional[str] = None
    pending: bool = False

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "LocalMessage":
        return cls(
            id=record["id"],
            role=record.get("role", "assistant"),
            content=record.get("content") or "",
            reasoning=record.get("reasoning"),
            model_id=record.get("modelId"),
            created_at=record.get("createdAt"),
        )

    def regions(self) -> ThinkingParts:
        return render_regions(self.content, self.reasoning)


@dataclass
class ConversationView:
    """Client-side state of one conversation."""
    chat_id: Optional[str] = None
    messages: List[LocalMessage] = field(default_factory=list)

    def load(self, records: List[Dict[str, Any]]) -> None:
        """Replace local state with the server's ordered message list."""
        self.messages = [LocalMessage.from_record(r) for r in records]

    def append(self, message: LocalMessage) -> None:
        self.messages.append(message)

    def find(self, message_id: str) -> Optional[LocalMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def reconcile(self, temp_id: Optional[str], record: Dict[str, Any]) -> Optional[LocalMessage]:
        """Replace the placeholder whose id equals ``temp_id`` with the server record.

        Returns the new message, or None (placeholder kept) when the id is
        missing or matches nothing.
        """
        if not temp_id:
            return None
        for index, message in enumerate(self.messages):
            if message.id == temp_id:
                saved = LocalMessage.from_record(record)
                self.messages[index] = saved
                return saved
        return None

    def history(self) -> List[Dict[str, str]]:
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages
            if not m.pending
        ]


class CancelToken:
    """User-triggered abort for an in-flight turn."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ChatStreamClient:
    """Sends chat turns and applies the streamed reply to a ConversationView."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[httpx.Timeout] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout or httpx.Timeout(None, connect=10.0),
        )

    async def __aenter__(self) -> "ChatStreamClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def load_conversation(self, chat_id: str) -> ConversationView:
        """Build a view from the server's stored messages."""
        response = await self._client.get(f"/api/chat/{chat_id}/messages")
        if response.status_code >= 400:
            raise ChatStreamError(response.status_code, _error_message(response))
        view = ConversationView(chat_id=chat_id)
        view.load(response.json()["messages"])
        return view

    async def send_turn(
        self,
        view: ConversationView,
        content: str,
        model_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> LocalMessage:
        """Send one user message and stream the reply into ``view``.

        Returns the saved assistant message, or the placeholder when the turn
        was cancelled or the server did not reconcile it.
        """
        temp_id = f"temp-{uuid.uuid4()}"
        view.append(LocalMessage(id=f"temp-user-{uuid.uuid4()}", role="user", content=content))
        payload = {
            "messages": view.history(),
            "chatId": view.chat_id,
            "modelId": model_id,
            "tempId": temp_id,
        }
        placeholder = LocalMessage(id=temp_id, role="assistant", pending=True)
        view.append(placeholder)

        reader = asyncio.create_task(self._read_stream(view, placeholder, payload))
        if cancel is None:
            return await reader

        waiter = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if reader in done:
            return reader.result()

        reader.cancel()
        try:
            await reader
        except asyncio.CancelledError:
            pass
        logger.info("chat_turn_cancelled", chat_id=view.chat_id, temp_id=temp_id)
        return view.find(temp_id) or placeholder

    async def _read_stream(
        self,
        view: ConversationView,
        placeholder: LocalMessage,
        payload: Dict[str, Any],
    ) -> LocalMessage:
        result = placeholder
        decoder = SSEDecoder()
        async with self._client.stream("POST", "/api/chat/stream", json=payload) as response:
            if response.status_code >= 400:
                await response.aread()
                view.messages.remove(placeholder)
                raise ChatStreamError(response.status_code, _error_message(response))

            chat_id = response.headers.get("x-chat-id")
            if chat_id:
                view.chat_id = chat_id

            async for text in response.aiter_text():
                for event in decoder.feed(text):
                    result = self._apply(view, placeholder, event) or result
            for event in decoder.flush():
                result = self._apply(view, placeholder, event) or result
        return result

    def _apply(
        self,
        view: ConversationView,
        placeholder: LocalMessage,
        event: SSEEvent,
    ) -> Optional[LocalMessage]:
        if event.event == COMPLETE_EVENT:
            record = json.loads(event.data)
            if record.get("chatId"):
                view.chat_id = record["chatId"]
            saved = view.reconcile(record.get("tempId"), record)
            if saved is None:
                logger.debug("placeholder_kept", temp_id=placeholder.id)
            return saved

        prefix, sep, body = event.data.partition(":")
        if not sep:
            return None
        try:
            text = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("fragment_undecodable", data=event.data[:200])
            return None
        if prefix == CONTENT_PREFIX:
            placeholder.content += text
        elif prefix == REASONING_PREFIX:
            placeholder.reasoning = (placeholder.reasoning or "") + text
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        error = response.json().get("error")
    except ValueError:
        return response.text
    if isinstance(error, dict):
        return error.get("message", str(error))
    return str(error)
