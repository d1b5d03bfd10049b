from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable
from uuid import uuid4

from models.session import FlowState, FlowStep
from services.flow_controller import FlowController
from services.sse_manager import SSEManager


logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    pass


class SessionGoneError(RuntimeError):
    """The session was abandoned while a transition was in flight."""


@dataclass
class _SessionSlot:
    state: FlowState
    touched_at: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionManager:
    """In-memory registry of live questionnaire sessions.

    Transitions for one session run one at a time under the session's lock.
    Sessions share nothing, so different sessions proceed in parallel.
    Completed and abandoned sessions are dropped, and so are sessions left
    idle for longer than ``idle_seconds``; idle sessions are swept whenever a
    session starts or receives a transcript.
    """

    def __init__(
        self,
        controller: FlowController,
        sse: SSEManager | None = None,
        idle_seconds: float | None = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.controller = controller
        self.sse = sse
        self.idle_seconds = idle_seconds
        self.clock = clock
        self._slots: dict[str, _SessionSlot] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._slots

    async def start(self, language: str = "en-US") -> FlowStep:
        await self.evict_idle()
        session_id = uuid4().hex
        state = self.controller.new_state(session_id, language)
        step = self.controller.start(state)
        step.state.version = 1
        logger.info("[%s] session started", session_id)
        if not step.done:
            self._slots[session_id] = _SessionSlot(state=step.state, touched_at=self.clock())
        await self._publish(state, step)
        return step

    def get(self, session_id: str) -> FlowState:
        slot = self._slots.get(session_id)
        if slot is None:
            raise SessionNotFoundError(session_id)
        return slot.state

    async def submit_transcript(self, session_id: str, transcript: str | None) -> FlowStep:
        await self.evict_idle()
        slot = self._slots.get(session_id)
        if slot is None:
            raise SessionNotFoundError(session_id)

        async with slot.lock:
            if self._slots.get(session_id) is not slot:
                raise SessionGoneError(session_id)
            base = slot.state
            step = await self.controller.handle_transcript(base, transcript)

            if self._slots.get(session_id) is not slot or slot.state.version != base.version:
                logger.info("[%s] session abandoned mid-transition, result discarded", session_id)
                raise SessionGoneError(session_id)

            step.state.version = base.version + 1
            slot.state = step.state
            slot.touched_at = self.clock()
            if step.done:
                self._slots.pop(session_id, None)

        await self._publish(base, step)
        return step

    async def abandon(self, session_id: str) -> bool:
        slot = self._slots.pop(session_id, None)
        if slot is None:
            return False
        slot.state = slot.state.model_copy(update={"abandoned": True})
        logger.info("[%s] session abandoned", session_id)
        if self.sse is not None:
            await self.sse.emit(session_id, "abandoned", {"sessionId": session_id})
            await self.sse.close(session_id)
        return True

    async def evict_idle(self) -> int:
        if self.idle_seconds is None:
            return 0
        cutoff = self.clock() - self.idle_seconds
        expired = [
            session_id
            for session_id, slot in self._slots.items()
            if slot.touched_at < cutoff and not slot.lock.locked()
        ]
        for session_id in expired:
            self._slots.pop(session_id, None)
            logger.info("[%s] session expired after %.0fs idle", session_id, self.idle_seconds)
            if self.sse is not None:
                await self.sse.emit(session_id, "expired", {"sessionId": session_id})
                await self.sse.close(session_id)
        return len(expired)

    async def _publish(self, before: FlowState, step: FlowStep) -> None:
        if self.sse is None:
            return
        session_id = step.state.session_id
        for entry in step.state.transcript[len(before.transcript) :]:
            await self.sse.emit(session_id, "transcript", entry.model_dump(mode="json"))
        for question_id, record in step.state.answers.items():
            if before.answers.get(question_id) != record:
                await self.sse.emit(
                    session_id,
                    "answer",
                    {"questionId": question_id, "normalized": record.normalized},
                )
        await self.sse.emit(
            session_id,
            "phase",
            {
                "phase": step.state.phase,
                "questionId": step.question_id,
                "isFollowup": step.is_followup,
            },
        )
        if step.done:
            await self.sse.close(session_id)
