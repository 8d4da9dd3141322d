"""
FastAPI Application — visitor chat, live events, admin panel.

Two audiences, two prefixes:
- /api/chat/*   visitor-facing (public)
- /api/admin/*  author-facing (Bearer token)

Live updates go out over SSE (/api/chat/{id}/events) or a WebSocket
(/ws/chat/{id}); both are fed by the ListenerRegistry. Visitors who are
not connected when a job settles catch up by polling /messages?after=.
"""
from __future__ import annotations

import asyncio
import json
import secrets
import structlog
from typing import Any, AsyncIterator, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import (
    Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from channels.base import ChannelClosedError
from channels.listeners import ListenerRegistry, QueueChannel, WebSocketChannel
from config.data_loader import load_data
from config.settings import Settings, get_settings, load_settings
from core.orchestrator import JobOrchestrator
from core.responder import Responder
from database.session import close_db, init_db
from database.store import SqlMessageStore
from database.store_base import BaseMessageStore
from database.store_factory import create_store
from llm import LLMAdapter, create_llm_adapter
from models.schemas import JobEvent, MessageRole, ResponseSource, SpamAction
from rules.engine import RulesEngine

logger = structlog.get_logger()

APP_VERSION = "0.1.0"

# responded_by marker for visitor messages silently dropped as spam
DROPPED = "dropped"


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class StartChatRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class SendMessageRequest(BaseModel):
    message: str = ""


class ConversationPatch(BaseModel):
    visitor_name: Optional[str] = None
    visitor_email: Optional[str] = None
    summary: Optional[str] = None
    tags: Optional[list[str]] = None
    spam: Optional[bool] = None
    seen: Optional[bool] = None
    pinned: Optional[bool] = None


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def build_responder(settings: Settings, llm: LLMAdapter) -> Responder:
    data = load_data(settings.data_dir, settings.sources)
    return Responder(
        persona=data.persona,
        rules_engine=RulesEngine(data.rules, data.spam_rules),
        llm=llm,
        chunks=data.chunks,
    )


def format_sse(event: str, data: str) -> str:
    lines = data.split("\n") if data else [""]
    return f"event: {event}\n" + "".join(f"data: {line}\n" for line in lines) + "\n"


async def sse_events(
    listeners: ListenerRegistry,
    conversation_id: str,
    heartbeat_seconds: float = 30.0,
) -> AsyncIterator[str]:
    """
    Server-sent event frames for one viewer: `connected` first, then every
    published event, with a heartbeat whenever the stream has been idle.

    The stream ends once the registry drops the channel (a reader too slow
    to keep up), so the client reconnects or falls back to polling.
    """
    channel = QueueChannel()
    unsubscribe = listeners.subscribe(conversation_id, channel)
    try:
        yield format_sse(JobEvent.CONNECTED.value, json.dumps({"conversationId": conversation_id}))
        while True:
            try:
                event, data = await asyncio.wait_for(channel.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield format_sse(JobEvent.HEARTBEAT.value, "")
                continue
            except ChannelClosedError:
                logger.info("sse_stream_closed", conversation_id=conversation_id)
                return
            yield format_sse(event, data)
    finally:
        channel.close()
        unsubscribe()


async def _conversation_or_404(store: BaseMessageStore, conversation_id: str) -> dict[str, Any]:
    conversation = await store.get_conversation(conversation_id)
    if not conversation:
        raise HTTPException(404, "Conversation not found")
    return conversation


async def require_admin(request: Request, authorization: str = Header(default="")) -> None:
    expected = request.app.state.settings.admin.token
    supplied = authorization[7:] if authorization.startswith("Bearer ") else ""
    if not expected or not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(401, "Unauthorized")


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings = None,
    store: BaseMessageStore = None,
    responder: Responder = None,
    llm: LLMAdapter = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or create_store({"store_backend": settings.database.store_backend})
    llm = llm or create_llm_adapter(settings.llm)
    listeners = ListenerRegistry()
    orchestrator = JobOrchestrator(store, listeners, history_window=settings.jobs.history_window)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        uses_sql = isinstance(store, SqlMessageStore)
        if uses_sql:
            await init_db(settings.database.url)
        if app.state.responder is None:
            app.state.responder = build_responder(settings, llm)
        if not settings.admin.token:
            logger.warning("admin_token_missing")

        orphans = await store.fail_orphaned_pending("interrupted")
        if orphans:
            logger.info("orphaned_pending_failed", count=orphans)

        logger.info("answerphone_started", llm=llm.name,
                    store=type(store).__name__, data_dir=settings.data_dir)
        yield

        await orchestrator.shutdown()
        await llm.aclose()
        if uses_sql:
            await close_db()
        logger.info("answerphone_stopped")

    app = FastAPI(
        title="answerphone API",
        description="Answering machine for a personal website, backed by a local LLM",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.llm = llm
    app.state.responder = responder
    app.state.listeners = listeners
    app.state.orchestrator = orchestrator

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    state = app.state

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/api/health")
    async def health():
        llm_ok = await state.llm.health()
        return {
            "status": "ok" if llm_ok else "degraded",
            "llm": "connected" if llm_ok else "unreachable",
            "version": APP_VERSION,
            "jobs": state.orchestrator.active_count,
            "listeners": state.listeners.stats(),
        }

    # ══════════════════════════════════════════════════════════
    #  VISITOR
    # ══════════════════════════════════════════════════════════

    @app.post("/api/chat/start")
    async def start_chat(req: Optional[StartChatRequest] = None):
        req = req or StartChatRequest()
        conversation = await state.store.create_conversation(req.name, req.email)
        greeting = state.responder.greeting()
        await state.store.add_message(
            conversation["id"], MessageRole.RESPONDER.value, greeting,
            {"source": ResponseSource.GREETING.value},
        )
        logger.info("conversation_started", conversation_id=conversation["id"])
        return {"conversationId": conversation["id"], "greeting": greeting}

    @app.post("/api/chat/{conversation_id}/message")
    async def send_message(conversation_id: str, req: SendMessageRequest):
        """
        Non-blocking: the visitor may keep writing while the model works.

        200 received  → instant spam/rule answer
        200 dropped   → silently ignored spam
        200 queued    → a job is already running; it will pick this up
        202 pending   → a new job was started
        """
        if not req.message.strip():
            raise HTTPException(400, "Message is required")
        store = state.store
        await _conversation_or_404(store, conversation_id)

        visitor_msg = await store.add_message(conversation_id, MessageRole.VISITOR.value, req.message)
        responder: Responder = state.responder

        # Fast path: spam check (no model call)
        spam = responder.check_spam(req.message)
        if spam:
            await store.update_conversation(conversation_id, spam=True)
            if spam.action == SpamAction.DROP:
                await store.mark_responded([visitor_msg["id"]], DROPPED)
                logger.info("message_dropped", conversation_id=conversation_id, rule_id=spam.rule.id)
                return {"messageId": None, "status": "dropped"}
            return await _instant_reply(conversation_id, visitor_msg["id"], responder.persona.fallback)

        # Fast path: keyword rules (no model call)
        rule = responder.check_rules(req.message)
        if rule:
            return await _instant_reply(conversation_id, visitor_msg["id"], rule.response)

        existing = await store.get_pending_message(conversation_id)
        if existing is None:
            pending = await store.add_pending_message(conversation_id, MessageRole.RESPONDER.value)
            if pending is None:
                existing = await store.get_pending_message(conversation_id)
        if existing is not None:
            # the running job re-reads all unanswered messages
            return {
                "messageId": visitor_msg["id"],
                "status": "queued",
                "pendingMessageId": existing["id"],
            }

        await state.listeners.publish(conversation_id, JobEvent.PROCESSING.value, {
            "pendingMessageId": pending["id"],
        })
        state.orchestrator.start(pending["id"], conversation_id, responder)
        return JSONResponse(
            status_code=202,
            content={"messageId": pending["id"], "status": "pending"},
        )

    async def _instant_reply(conversation_id: str, visitor_message_id: str, content: str) -> dict:
        reply = await state.store.add_message(
            conversation_id, MessageRole.RESPONDER.value, content,
            {"source": ResponseSource.RULE.value},
        )
        await state.store.mark_responded([visitor_message_id], reply["id"])
        await state.listeners.publish(conversation_id, JobEvent.MESSAGE.value, {
            "id": reply["id"],
            "role": reply["role"],
            "content": content,
            "status": reply["status"],
            "source": ResponseSource.RULE.value,
            "createdAt": reply["created_at"],
        })
        return {"messageId": reply["id"], "status": "received", "response": content}

    @app.get("/api/chat/{conversation_id}/events")
    async def chat_events(conversation_id: str):
        await _conversation_or_404(state.store, conversation_id)
        return StreamingResponse(
            sse_events(state.listeners, conversation_id, state.settings.server.heartbeat_seconds),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.delete("/api/chat/{conversation_id}/pending")
    async def cancel_pending(conversation_id: str):
        await _conversation_or_404(state.store, conversation_id)
        pending = await state.store.get_pending_message(conversation_id)
        if not pending:
            raise HTTPException(404, "No pending message")
        if not state.orchestrator.cancel(pending["id"]):
            # finished between the lookup and the cancel
            raise HTTPException(409, "Job already completed")
        return {"ok": True, "messageId": pending["id"]}

    @app.get("/api/chat/{conversation_id}/messages")
    async def poll_messages(conversation_id: str, after: Optional[str] = Query(default=None)):
        await _conversation_or_404(state.store, conversation_id)
        if after:
            try:
                messages = await state.store.get_messages_since(conversation_id, after)
            except ValueError:
                raise HTTPException(400, "Invalid 'after' timestamp")
        else:
            messages = await state.store.get_messages(conversation_id)
        return {"messages": messages}

    @app.get("/api/chat/{conversation_id}")
    async def get_chat(conversation_id: str):
        conversation = await _conversation_or_404(state.store, conversation_id)
        messages = await state.store.get_messages(conversation_id)
        return {"conversation": conversation, "messages": messages}

    # ══════════════════════════════════════════════════════════
    #  WEBSOCKET — live events
    # ══════════════════════════════════════════════════════════

    @app.websocket("/ws/chat/{conversation_id}")
    async def websocket_events(websocket: WebSocket, conversation_id: str):
        """Same events as the SSE stream, as {"event", "data"} JSON frames."""
        await websocket.accept()
        if not await state.store.get_conversation(conversation_id):
            await websocket.close(code=4404, reason="Conversation not found")
            return

        channel = WebSocketChannel(websocket)
        unsubscribe = state.listeners.subscribe(conversation_id, channel)
        try:
            await channel.send(JobEvent.CONNECTED.value, json.dumps({"conversationId": conversation_id}))
            while True:
                # inbound frames only keep the connection alive
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("websocket_error", conversation_id=conversation_id, error=str(e))
        finally:
            channel.close()
            unsubscribe()

    # ══════════════════════════════════════════════════════════
    #  ADMIN
    # ══════════════════════════════════════════════════════════

    @app.get("/api/admin/digest", dependencies=[Depends(require_admin)])
    async def admin_digest():
        """Summary since the last admin visit; marks everything seen."""
        since = await state.store.get_last_admin_visit()
        conversations = await state.store.list_conversations()
        await state.store.record_admin_visit()

        unseen = [c for c in conversations if not c["seen"]]
        for conv in unseen:
            await state.store.update_conversation(conv["id"], seen=True)
        return {"since": since, "conversations": conversations, "newCount": len(unseen)}

    @app.get("/api/admin/conversations", dependencies=[Depends(require_admin)])
    async def admin_list_conversations(
        spam: bool = False, unseen: bool = False,
        limit: int = Query(default=50, ge=1, le=500), offset: int = Query(default=0, ge=0),
    ):
        conversations = await state.store.list_conversations(
            include_spam=spam, unseen_only=unseen, limit=limit, offset=offset,
        )
        return {"conversations": conversations}

    @app.get("/api/admin/conversations/{conversation_id}", dependencies=[Depends(require_admin)])
    async def admin_get_conversation(conversation_id: str):
        conversation = await _conversation_or_404(state.store, conversation_id)
        messages = await state.store.get_messages(conversation_id)
        return {"conversation": conversation, "messages": messages}

    @app.patch("/api/admin/conversations/{conversation_id}", dependencies=[Depends(require_admin)])
    async def admin_update_conversation(conversation_id: str, patch: ConversationPatch):
        await _conversation_or_404(state.store, conversation_id)
        updates = patch.model_dump(exclude_unset=True, exclude_none=True)
        await state.store.update_conversation(conversation_id, **updates)
        return {"ok": True}

    @app.delete("/api/admin/conversations/{conversation_id}", dependencies=[Depends(require_admin)])
    async def admin_delete_conversation(conversation_id: str):
        await _conversation_or_404(state.store, conversation_id)
        pending = await state.store.get_pending_message(conversation_id)
        if pending:
            state.orchestrator.cancel(pending["id"])
        await state.store.delete_conversation(conversation_id)
        logger.info("conversation_deleted", conversation_id=conversation_id)
        return {"ok": True}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

def main() -> None:
    import uvicorn
    settings = load_settings()
    uvicorn.run(
        "api.main:create_app", factory=True,
        host=settings.server.host, port=settings.server.port,
    )


if __name__ == "__main__":
    main()
