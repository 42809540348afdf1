############################################################
#
# tinychat - Streaming LLM Chat Service
#
# relay.py: Streaming response relay for chat turns
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Streaming response relay.

One chat turn moves through these states::

    RECEIVED -> USER_PERSISTED -> MODEL_INVOKED -> STREAMING
             -> FINALIZING -> COMPLETE        (or FAILED)

:meth:`ChatRelay.prepare` runs on the request's database session: it checks
the usage quota, resolves the conversation and commits the user message
before any model is called. :meth:`ChatRelay.stream` then yields the SSE
wire text. Model output is produced by a background task feeding a queue so
a client that disconnects does not stop the turn; the assistant message is
written once, on its own session, after the model stream ends.

Wire format (one SSE event per item)::

    data: 0:"<json string>"          content fragment
    data: g:"<json string>"          reasoning fragment
    event: message_complete
    data: {"id": ..., "tempId": ...} saved assistant message
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from prometheus_client import Counter, Histogram
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tinychat.app.core.adapters import AdapterErr, AdapterRegistry, DeltaKind, StreamDelta
from tinychat.app.core.schemas import ChatStreamRequest
from tinychat.app.db import chat_crud, crud
from tinychat.app.db.base import isoformat
from tinychat.app.db.models import Message, MessageRole
from tinychat.app.db.session import Database
from tinychat.app.logging_config import get_logger
from tinychat.app.security.session import Identity
from tinychat.app.settings import Settings

logger = get_logger(__name__)

# Prometheus metrics
CHAT_TURNS = Counter(
    "tinychat_chat_turns_total",
    "Chat turns by outcome",
    ["outcome"],  # complete, failed, rejected
)
STREAM_FRAGMENTS = Counter(
    "tinychat_stream_fragments_total",
    "Fragments relayed to clients",
)
UPSTREAM_ERRORS = Counter(
    "tinychat_upstream_errors_total",
    "Upstream model failures",
    ["provider"],
)
TURN_LATENCY = Histogram(
    "tinychat_turn_latency_seconds",
    "Time from turn start until the assistant message is saved",
)

COMPLETE_EVENT = "message_complete"

FRAGMENT_PREFIX = {
    DeltaKind.CONTENT: "0",
    DeltaKind.REASONING: "g",
}

_END = object()


class TurnState(str, Enum):
    """Lifecycle state of a chat turn."""
    RECEIVED = "received"
    USER_PERSISTED = "user_persisted"
    MODEL_INVOKED = "model_invoked"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


class TurnRejected(Exception):
    """A turn refused before streaming starts. Maps to an HTTP error response."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass
class ChatTurn:
    """State of one chat turn."""
    request: ChatStreamRequest
    identity: Identity
    model_id: str
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    model_pk: Optional[str] = None
    user_message_id: Optional[str] = None
    state: TurnState = TurnState.RECEIVED
    content_parts: List[str] = field(default_factory=list)
    reasoning_parts: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    persisted: "asyncio.Future[Optional[Message]]" = field(default=None)

    def __post_init__(self):
        if self.persisted is None:
            self.persisted = asyncio.get_running_loop().create_future()

    @property
    def temp_id(self) -> Optional[str]:
        return self.request.temp_id

    @property
    def content(self) -> str:
        return "".join(self.content_parts)

    @property
    def reasoning(self) -> Optional[str]:
        return "".join(self.reasoning_parts) or None

    def transition(self, state: TurnState, **fields: Any) -> None:
        logger.info(
            "chat_turn_state",
            chat_id=self.conversation_id,
            model=self.model_id,
            state=state.value,
            previous=self.state.value,
            **fields,
        )
        self.state = state

    def resolve_persisted(self, message: Optional[Message]) -> None:
        if not self.persisted.done():
            self.persisted.set_result(message)


def format_fragment(text: str, kind: DeltaKind = DeltaKind.CONTENT) -> str:
    """Encode one fragment as an SSE data line."""
    return f"data: {FRAGMENT_PREFIX[kind]}:{json.dumps(text, ensure_ascii=False)}\n\n"


def completion_payload(turn: ChatTurn, message: Message) -> Dict[str, Any]:
    payload = {
        "id": message.id,
        "content": message.content,
        "reasoning": message.reasoning,
        "role": message.role.value,
        "modelId": message.model_id,
        "createdAt": isoformat(message.created_at),
        "chatId": message.conversation_id,
    }
    if turn.temp_id:
        payload["tempId"] = turn.temp_id
    return payload


def format_completion(turn: ChatTurn, message: Message) -> str:
    data = json.dumps(completion_payload(turn, message), ensure_ascii=False)
    return f"event: {COMPLETE_EVENT}\ndata: {data}\n\n"


def derive_title(text: Optional[str], max_length: int, fallback: str) -> str:
    """Conversation title from the first user message."""
    title = (text or "")[:max_length].strip()
    return title or fallback


class ChatRelay:
    """Runs chat turns: persistence, model dispatch and SSE relay."""

    def __init__(self, database: Database, registry: AdapterRegistry, settings: Settings):
        self.database = database
        self.registry = registry
        self.settings = settings
        self._background: Set[asyncio.Task] = set()

    @property
    def active_turns(self) -> int:
        return len(self._background)

    # -- RECEIVED / USER_PERSISTED ------------------------------------------

    async def prepare(
        self,
        db: AsyncSession,
        body: ChatStreamRequest,
        identity: Identity,
    ) -> ChatTurn:
        """Validate, count usage and persist the user message.

        Raises :class:`TurnRejected` for usage limit (429), unknown chat (404)
        or a failed write (500). Nothing is left in the database on rejection.
        """
        turn = ChatTurn(
            request=body,
            identity=identity,
            model_id=body.model_id or self.settings.default_model_id,
            conversation_id=body.chat_id,
        )
        logger.info(
            "chat_turn_started",
            chat_id=body.chat_id,
            model=turn.model_id,
            authenticated=identity.authenticated,
            has_temp_id=body.temp_id is not None,
        )

        user_message = body.last_user_message()
        if user_message is None:
            raise TurnRejected(400, "messages must include a user message")

        try:
            if identity.authenticated:
                user = await crud.ensure_session_user(db, identity.user_id)
            else:
                user = await crud.get_or_create_user(
                    db,
                    self.settings.default_user_email,
                    name=self.settings.default_user_name,
                )
            turn.user_id = user.id

            # Increment first, then check, in the same transaction as the
            # user message: a rejected turn rolls its increment back.
            limit = self.settings.get_usage_limit(identity.authenticated)
            count = await crud.increment_usage(
                db, user_id=identity.user_id, ip_address=identity.ip_address
            )
            if count > limit:
                await db.rollback()
                CHAT_TURNS.labels(outcome="rejected").inc()
                logger.info("usage_limit_reached", used=count - 1, limit=limit)
                raise TurnRejected(429, "Daily usage limit reached")

            turn.model_pk = await crud.resolve_model_pk(db, turn.model_id)

            if body.chat_id:
                conv = await chat_crud.get_conversation(db, body.chat_id)
                if conv is None:
                    await db.rollback()
                    raise TurnRejected(404, "Chat not found")
            else:
                first = body.first_user_message()
                conv = await chat_crud.create_conversation(
                    db,
                    user_id=user.id,
                    title=derive_title(
                        first.content if first else None,
                        self.settings.title_max_length,
                        self.settings.default_chat_title,
                    ),
                    model_pk=turn.model_pk,
                )
                logger.info("conversation_created", chat_id=conv.id, title=conv.title)
            turn.conversation_id = conv.id

            msg = None
            if body.messages[-1].role == MessageRole.USER or not body.chat_id:
                msg = await chat_crud.create_message(
                    db, conv.id, MessageRole.USER, user_message.content
                )
            else:
                # Existing chat already holds this user message
                logger.warning("trailing_message_not_user", chat_id=conv.id)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.exception("user_message_save_failed", chat_id=turn.conversation_id, error=str(e))
            CHAT_TURNS.labels(outcome="rejected").inc()
            raise TurnRejected(500, "Failed to save message") from e

        turn.user_message_id = msg.id if msg is not None else None
        turn.transition(TurnState.USER_PERSISTED, message_id=turn.user_message_id)
        return turn

    # -- MODEL_INVOKED / STREAMING / FINALIZING / COMPLETE ------------------

    async def stream(self, turn: ChatTurn) -> AsyncIterator[str]:
        """Yield SSE text for a prepared turn.

        The turn runs in a background task; closing this iterator early does
        not stop it unless ``relay_cancel_upstream_on_disconnect`` is set.
        """
        queue: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._produce(turn, queue))
        self._background.add(producer)
        producer.add_done_callback(self._background.discard)

        finished = False
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    finished = True
                    break
                yield item
        finally:
            if not finished:
                if self.settings.relay_cancel_upstream_on_disconnect:
                    logger.info("client_disconnected_cancelling", chat_id=turn.conversation_id)
                    producer.cancel()
                else:
                    logger.info("client_disconnected_continuing", chat_id=turn.conversation_id)

    async def complete(self, turn: ChatTurn) -> Optional[Message]:
        """Run a prepared turn without streaming and return the saved assistant message."""
        adapter = self.registry.resolve(turn.model_id)
        turn.transition(TurnState.MODEL_INVOKED, provider=adapter.provider)

        try:
            result = await adapter.complete(turn.request.messages, turn.model_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("chat_complete_error", chat_id=turn.conversation_id, error=str(e))
            result = AdapterErr(str(e))

        if isinstance(result, AdapterErr):
            UPSTREAM_ERRORS.labels(provider=adapter.provider).inc()
            turn.content_parts.append(self._stand_in(adapter.provider, result.reason))
        else:
            turn.content_parts.append(result.response.answer_text)
            if result.response.reasoning_text:
                turn.reasoning_parts.append(result.response.reasoning_text)

        turn.transition(TurnState.FINALIZING, content_length=len(turn.content))
        message = await asyncio.shield(self._save_assistant_message(turn))
        if message is None:
            CHAT_TURNS.labels(outcome="failed").inc()
            turn.transition(TurnState.FAILED, reason="persist_failed")
            return None
        TURN_LATENCY.observe(time.monotonic() - turn.started_at)
        CHAT_TURNS.labels(outcome="complete").inc()
        turn.transition(TurnState.COMPLETE, message_id=message.id)
        return message

    async def run_to_completion(self, turn: ChatTurn) -> str:
        """Drive a turn without a reader and return the concatenated wire text."""
        return "".join([chunk async for chunk in self.stream(turn)])

    async def drain(self) -> None:
        """Wait for turns still running in the background (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _emit(self, turn: ChatTurn, queue: asyncio.Queue, text: str, kind: DeltaKind) -> None:
        if not text:
            return
        if kind == DeltaKind.REASONING:
            turn.reasoning_parts.append(text)
        else:
            turn.content_parts.append(text)
        STREAM_FRAGMENTS.inc()
        queue.put_nowait(format_fragment(text, kind))

    def _stand_in(self, provider: str, reason: str) -> str:
        return f"[{provider}] The model request failed: {reason}"

    async def _produce(self, turn: ChatTurn, queue: asyncio.Queue) -> None:
        try:
            adapter = self.registry.resolve(turn.model_id)
            turn.transition(TurnState.MODEL_INVOKED, provider=adapter.provider)

            turn.transition(TurnState.STREAMING)
            try:
                async for item in adapter.stream(turn.request.messages, turn.model_id):
                    if isinstance(item, AdapterErr):
                        UPSTREAM_ERRORS.labels(provider=adapter.provider).inc()
                        self._emit(
                            turn, queue, self._stand_in(adapter.provider, item.reason),
                            DeltaKind.CONTENT,
                        )
                        break
                    if isinstance(item, StreamDelta):
                        self._emit(turn, queue, item.text, item.kind)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("chat_stream_error", chat_id=turn.conversation_id, error=str(e))
                UPSTREAM_ERRORS.labels(provider=adapter.provider).inc()
                self._emit(turn, queue, self._stand_in(adapter.provider, str(e)), DeltaKind.CONTENT)

            turn.transition(TurnState.FINALIZING, content_length=len(turn.content))
            # Shielded: the write finishes even if this task is cancelled now
            save = asyncio.create_task(self._save_assistant_message(turn))
            message = await asyncio.shield(save)

            if message is None:
                CHAT_TURNS.labels(outcome="failed").inc()
                turn.transition(TurnState.FAILED, reason="persist_failed")
                return

            queue.put_nowait(format_completion(turn, message))
            TURN_LATENCY.observe(time.monotonic() - turn.started_at)
            CHAT_TURNS.labels(outcome="complete").inc()
            turn.transition(TurnState.COMPLETE, message_id=message.id)
        except asyncio.CancelledError:
            if turn.state not in (TurnState.FINALIZING, TurnState.COMPLETE):
                CHAT_TURNS.labels(outcome="failed").inc()
                turn.transition(TurnState.FAILED, reason="cancelled")
                turn.resolve_persisted(None)
            raise
        except Exception as e:
            logger.exception("chat_turn_failed", chat_id=turn.conversation_id, error=str(e))
            CHAT_TURNS.labels(outcome="failed").inc()
            turn.transition(TurnState.FAILED, reason="error")
            turn.resolve_persisted(None)
        finally:
            queue.put_nowait(_END)

    async def _save_assistant_message(self, turn: ChatTurn) -> Optional[Message]:
        """Save the assistant message using an independent DB session."""
        message = None
        try:
            async with self.database.session() as save_db:
                message = await chat_crud.create_message(
                    save_db,
                    turn.conversation_id,
                    MessageRole.ASSISTANT,
                    turn.content,
                    reasoning=turn.reasoning,
                    model_pk=turn.model_pk,
                )
                await save_db.commit()
        except SQLAlchemyError as e:
            logger.exception(
                "assistant_message_save_failed",
                chat_id=turn.conversation_id,
                error=str(e),
            )
            message = None
        turn.resolve_persisted(message)
        return message
