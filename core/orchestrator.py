"""
Job Orchestrator — background lifecycle of one pending reply per conversation.

Architecture:
  Inbound:  API stores the visitor message + an empty pending placeholder
            → start(pending_id, conversation_id, responder) → returns at once

  Job:      read ALL unanswered visitor messages → fold into one question
            → history window → responder (the only slow await)
            → re-check cancellation → resolve placeholder → publish event
            → anything new arrived meanwhile? → new placeholder + new job

Every job ends by resolving its placeholder exactly once (received or
error) and removing its cancellation token, whichever path it takes.
Chained jobs are new tasks, never recursive calls, so each one has its own
token and its own stack.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass, field
from typing import Optional

import httpx

from channels.listeners import ListenerRegistry
from core.cancellation import CancellationToken
from database.store_base import BaseMessageStore
from llm.provider import LLMTimeoutError
from models.schemas import JobEvent, LLMMessage, MessageRole, RespondResult

logger = structlog.get_logger()

QUESTION_SEPARATOR = "\n\n"
PUBLIC_ERROR = "Failed to generate response"

_ROLE_TO_TURN = {
    MessageRole.VISITOR.value: "user",
    MessageRole.RESPONDER.value: "assistant",
}


def classify_failure(exc: BaseException) -> str:
    """Return ``timeout`` when the call ran out of time, ``error`` otherwise."""
    if isinstance(exc, (LLMTimeoutError, asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return "timeout"
    return "error"


@dataclass
class Job:
    pending_message_id: str
    conversation_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    task: Optional[asyncio.Task] = None
    started_at: float = field(default_factory=time.monotonic)
    consumed_ids: list[str] = field(default_factory=list)

    @property
    def elapsed(self) -> float:
        return round(time.monotonic() - self.started_at, 1)


class JobOrchestrator:
    """
    Owns the active-token map and the set of running job tasks.

    One instance per process; the API and tests construct their own, so no
    state leaks between them.
    """

    def __init__(
        self,
        store: BaseMessageStore,
        listeners: ListenerRegistry,
        history_window: int = 10,
    ):
        self.store = store
        self.listeners = listeners
        self.history_window = history_window
        self._jobs: dict[str, Job] = {}          # pending_message_id → job
        self._tasks: set[asyncio.Task] = set()

    # ── Public contract ───────────────────────────────────

    def start(self, pending_message_id: str, conversation_id: str, responder) -> None:
        """Schedule a background job for an existing pending message."""
        if pending_message_id in self._jobs:
            logger.warning("job_already_active", pending_message_id=pending_message_id)
            return

        job = Job(pending_message_id=pending_message_id, conversation_id=conversation_id)
        self._jobs[pending_message_id] = job
        job.task = asyncio.create_task(self._run(job, responder))
        self._tasks.add(job.task)
        job.task.add_done_callback(self._tasks.discard)
        logger.info("job_started", pending_message_id=pending_message_id,
                    conversation_id=conversation_id)

    def cancel(self, pending_message_id: str) -> bool:
        """
        Signal cancellation of an active job.

        Returns False when no job holds that id (already settled or never
        existed); callers treat that as "too late", not as a failure.
        """
        job = self._jobs.pop(pending_message_id, None)
        if job is None:
            return False
        job.token.cancel("cancelled")
        logger.info("job_cancel_requested", pending_message_id=pending_message_id,
                    conversation_id=job.conversation_id, elapsed=job.elapsed)
        return True

    def is_active(self, pending_message_id: str) -> bool:
        return pending_message_id in self._jobs

    @property
    def active_count(self) -> int:
        return len(self._jobs)

    async def wait_idle(self) -> None:
        """Wait for every running job, including jobs chained while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every active job and wait for each to settle."""
        for pending_id in list(self._jobs):
            job = self._jobs.pop(pending_id)
            job.token.cancel("shutdown")
        await self.wait_idle()
        logger.info("orchestrator_stopped")

    # ── Job body ──────────────────────────────────────────

    async def _run(self, job: Job, responder) -> None:
        log = logger.bind(pending_message_id=job.pending_message_id,
                          conversation_id=job.conversation_id)
        try:
            await self._process(job, responder, log)
        except Exception as e:
            if job.token.cancelled:
                await self._settle_cancelled(job, log)
            else:
                await self._settle_error(job, e, log)
        finally:
            self._release(job)

    async def _process(self, job: Job, responder, log) -> None:
        questions = await self.store.get_unresponded_visitor_messages(job.conversation_id)
        if not questions:
            # another job already answered everything
            log.info("job_no_messages")
            await self.store.resolve_pending_message(
                job.pending_message_id, "", "error", {"error": "no messages"},
            )
            return

        job.consumed_ids = [m["id"] for m in questions]
        question = QUESTION_SEPARATOR.join(m["content"] for m in questions)
        history = await self._build_history(job.conversation_id, set(job.consumed_ids))

        log.info("job_responding", questions=len(questions), history=len(history))
        result: RespondResult = await responder.respond(question, history, job.token)

        if job.token.cancelled:
            # a late answer loses to a cancel that was already requested
            log.info("job_cancelled_after_response", source=result.source.value)
            await self._settle_cancelled(job, log)
            return

        if result.drop:
            await self.store.update_conversation(job.conversation_id, spam=True)
            await self.store.resolve_pending_message(
                job.pending_message_id, "", "received", responded_ids=job.consumed_ids,
            )
            log.info("job_settled", outcome="dropped", elapsed=job.elapsed)
            await self.listeners.publish(job.conversation_id, JobEvent.MESSAGE.value, {
                "id": job.pending_message_id,
                "role": MessageRole.RESPONDER.value,
                "content": "",
                "status": "received",
            })
            return

        if result.spam:
            await self.store.update_conversation(job.conversation_id, spam=True)

        resolved_at = await self.store.resolve_pending_message(
            job.pending_message_id, result.content, "received",
            {"source": result.source.value}, responded_ids=job.consumed_ids,
        )
        log.info("job_settled", outcome="received", source=result.source.value,
                 spam=result.spam, elapsed=job.elapsed)
        await self.listeners.publish(job.conversation_id, JobEvent.MESSAGE.value, {
            "id": job.pending_message_id,
            "role": MessageRole.RESPONDER.value,
            "content": result.content,
            "status": "received",
            "source": result.source.value,
            "createdAt": resolved_at,
        })

        try:
            await self._chain(job, responder, log)
        except Exception as e:
            log.error("job_chain_failed", error=str(e))

    async def _build_history(self, conversation_id: str, exclude: set[str]) -> list[LLMMessage]:
        if self.history_window <= 0:
            return []
        recent = await self.store.get_messages(
            conversation_id, limit=self.history_window + len(exclude) + 1,
        )
        turns = [
            m for m in recent
            if m["status"] != "pending" and m["id"] not in exclude and m["content"]
        ][-self.history_window:]
        return [
            LLMMessage(role=_ROLE_TO_TURN.get(m["role"], "user"), content=m["content"])
            for m in turns
        ]

    async def _chain(self, job: Job, responder, log) -> None:
        """Start a follow-up job if the visitor wrote while this one ran."""
        arrived = await self.store.get_unresponded_visitor_messages(job.conversation_id)
        if not arrived:
            return
        pending = await self.store.add_pending_message(
            job.conversation_id, MessageRole.RESPONDER.value,
        )
        if pending is None:
            # the inbound handler already started the next job
            log.info("job_chain_skipped", reason="pending_exists")
            return
        log.info("job_chained", next_pending_message_id=pending["id"], questions=len(arrived))
        await self.listeners.publish(job.conversation_id, JobEvent.PROCESSING.value, {
            "pendingMessageId": pending["id"],
        })
        self.start(pending["id"], job.conversation_id, responder)

    # ── Settlement ────────────────────────────────────────

    async def _settle_cancelled(self, job: Job, log) -> None:
        try:
            await self.store.resolve_pending_message(
                job.pending_message_id, "", "error", {"error": "cancelled"},
                responded_ids=job.consumed_ids,
            )
        except Exception as e:
            log.error("job_settlement_failed", outcome="cancelled", error=str(e))
        log.info("job_settled", outcome="cancelled", reason=job.token.reason, elapsed=job.elapsed)
        await self.listeners.publish(job.conversation_id, JobEvent.CANCELLED.value, {
            "id": job.pending_message_id,
        })

    async def _settle_error(self, job: Job, exc: Exception, log) -> None:
        kind = classify_failure(exc)
        reason = str(exc) or type(exc).__name__
        log.error("job_failed", kind=kind, error=reason, elapsed=job.elapsed)
        try:
            await self.store.resolve_pending_message(
                job.pending_message_id, "", "error", {"error": reason, "type": kind},
                responded_ids=job.consumed_ids,
            )
        except Exception as e:
            log.error("job_settlement_failed", outcome="error", error=str(e))
        await self.listeners.publish(job.conversation_id, JobEvent.ERROR.value, {
            "id": job.pending_message_id,
            "error": PUBLIC_ERROR,
            "type": kind,
        })

    def _release(self, job: Job) -> None:
        if self._jobs.get(job.pending_message_id) is job:
            del self._jobs[job.pending_message_id]

