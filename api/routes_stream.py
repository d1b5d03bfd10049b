from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends, HTTPException, status
from sse_starlette.sse import EventSourceResponse

from api.deps import get_session_manager, get_sse_manager
from services.session_manager import SessionManager
from services.sse_manager import SSEManager


router = APIRouter(prefix="/sessions", tags=["stream"])


@router.get("/{session_id}/stream")
async def session_stream(
    session_id: str,
    sessions: SessionManager = Depends(get_session_manager),
    sse_manager: SSEManager = Depends(get_sse_manager),
) -> EventSourceResponse:
    if session_id not in sessions:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    queue = sse_manager.subscribe(session_id)

    async def event_generator():
        try:
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=15)
                except asyncio.TimeoutError:
                    yield {"event": "ping", "data": "{}"}
                    continue
                if message is None:
                    break
                yield {
                    "event": message["event"],
                    "data": json.dumps(message["data"], ensure_ascii=False),
                }
        finally:
            sse_manager.unsubscribe(session_id, queue)

    return EventSourceResponse(event_generator())
