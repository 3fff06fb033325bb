"""Server-Sent Events (SSE) router: change notifications for connected clients."""
import asyncio
import json
import logging
import threading
from typing import AsyncGenerator, Optional
from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

_logger = logging.getLogger('onduty.events')

router = APIRouter(prefix="/api/events", tags=["Events"])

EVENT_TYPES = ('schedule_changed', 'leave_changed', 'task_changed', 'roster_changed', 'settings_changed')

# One (loop, queue) pair per open stream.
_lock = threading.Lock()
_subscribers: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []


def _offer(queue: asyncio.Queue, payload: dict) -> None:
    # Slow clients lose events instead of blocking writers.
    if not queue.full():
        queue.put_nowait(payload)


def broadcast(event_type: str, data: Optional[dict] = None) -> None:
    """Queue an event for every connected client.

    Safe to call from the worker threads that run sync endpoints.
    """
    payload = {"type": event_type, "data": data or {}}
    with _lock:
        dead = []
        for loop, q in _subscribers:
            try:
                loop.call_soon_threadsafe(_offer, q, payload)
            except RuntimeError:
                # loop already closed
                dead.append((loop, q))
        for item in dead:
            _subscribers.remove(item)
        count = len(_subscribers)
    if count:
        _logger.debug("SSE broadcast: %s -> %d clients", event_type, count)


def subscriber_count() -> int:
    with _lock:
        return len(_subscribers)


async def _event_generator(request: Request, loop: asyncio.AbstractEventLoop,
                           queue: asyncio.Queue) -> AsyncGenerator[str, None]:
    try:
        yield "event: connected\ndata: {}\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                payload = await asyncio.wait_for(queue.get(), timeout=25.0)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"event: {payload['type']}\ndata: {json.dumps(payload['data'], default=str)}\n\n"
    finally:
        with _lock:
            if (loop, queue) in _subscribers:
                _subscribers.remove((loop, queue))
        _logger.debug("SSE client disconnected. Remaining: %d", subscriber_count())


@router.get("", summary="SSE event stream", description=(
    "Connect to receive change notifications. Pass the session token as `?token=` "
    "because EventSource cannot set headers.\n\n"
    "Events: `connected`, " + ", ".join(f"`{t}`" for t in EVENT_TYPES)
))
async def sse_stream(request: Request):
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=50)
    with _lock:
        _subscribers.append((loop, queue))
    _logger.debug("SSE client connected. Total: %d", subscriber_count())

    return StreamingResponse(
        _event_generator(request, loop, queue),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )
