"""FastAPI application for the walk-in queue.

The app exposes ticket registration, the ticket status and phone-search
views, an operator "call next" action and a Server-Sent Events stream fed
by the live view sync.  Everything is wired from one ``Settings`` object
by ``create_app``; Redis is optional and, when configured, carries the
change feed and the durable completion queue.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, PlainTextResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from changefeed import LocalChangeFeed, RedisChangeFeed
from completion import RedisCompletionQueue, TimerCompletionScheduler
from completion_worker import CompletionWorker, start_in_thread
from config import Settings, configure_logging
from live_sync import LiveViewSync
from notifications import NotificationDispatcher
from schemas import CallNextResponse, DeliveryOut, RegisterRequest, TicketOut, TicketStatusView
from services import QueueService, position_of
from store import Conflict, StoreError, TicketStore

logger = logging.getLogger(__name__)

REGISTER_ATTEMPTS = 3
HEARTBEAT_SECONDS = 15.0
TRY_AGAIN = "Failed to get ticket. Please try again."


def _waiting_payload(waiting) -> Dict[str, Any]:
    return {
        "type": "queue_update",
        "tickets": [TicketOut.build(t, position_of(t, waiting)).model_dump(mode="json") for t in waiting],
    }


def _called_payload(ticket) -> Dict[str, Any]:
    return {
        "type": "called_update",
        "ticket": TicketOut.build(ticket).model_dump(mode="json") if ticket else None,
    }


async def view_stream(live_sync: LiveViewSync, view: str, is_disconnected, heartbeat: float = HEARTBEAT_SECONDS):
    """Yield SSE frames for ``view``: the current snapshot, then one per change.

    The subscription is only taken once the stream is iterated and is
    cancelled however the stream ends, so a client that drops before the
    first frame leaves no listener behind.
    """
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue = asyncio.Queue()

    def push(payload: Dict[str, Any]) -> None:
        try:
            loop.call_soon_threadsafe(updates.put_nowait, payload)
        except RuntimeError:
            # Loop already closed, the stream is gone
            pass

    subscription = None
    try:
        if view == "waiting":
            subscription = live_sync.subscribe_waiting(lambda waiting: push(_waiting_payload(waiting)))
            initial = _waiting_payload(await run_in_threadpool(live_sync.service.list_waiting))
        else:
            subscription = live_sync.subscribe_called(lambda ticket: push(_called_payload(ticket)))
            initial = _called_payload(await run_in_threadpool(live_sync.service.get_called_ticket))
        yield f"data: {json.dumps(initial)}\n\n"

        while not await is_disconnected():
            try:
                payload = await asyncio.wait_for(updates.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
                continue
            yield f"data: {json.dumps(payload)}\n\n"
    finally:
        if subscription is not None:
            subscription.cancel()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[TicketStore] = None,
    dispatcher=None,
    scheduler=None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    if store is None:
        feed = RedisChangeFeed.from_url(settings.redis_url) if settings.redis_url else LocalChangeFeed()
        store = TicketStore.from_url(settings.database_url, feed=feed)
    if dispatcher is None:
        dispatcher = NotificationDispatcher.from_settings(settings)

    service = QueueService(store, dispatcher, completion_delay_ms=settings.completion_delay_ms)
    worker = None
    if scheduler is None:
        if settings.redis_url:
            completion_queue = RedisCompletionQueue.from_url(settings.redis_url)
            scheduler = completion_queue
            if settings.completion_worker_inline:
                worker = CompletionWorker(completion_queue, service)
        else:
            scheduler = TimerCompletionScheduler(service.complete_ticket)
    service.scheduler = scheduler
    live_sync = LiveViewSync(service, store.feed)

    app = FastAPI(title="Walk-in Queue")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.service = service
    app.state.live_sync = live_sync
    app.state.worker_stop = None

    @app.on_event("startup")
    def on_startup() -> None:
        configure_logging(settings.log_level)
        store.create_tables()
        if worker is not None:
            _, app.state.worker_stop = start_in_thread(worker)
        logger.info(
            f"Queue started (sms={'on' if settings.sms_configured else 'off'}, "
            f"email={'on' if settings.email_configured else 'off'}, "
            f"redis={'on' if settings.redis_url else 'off'})"
        )

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        if app.state.worker_stop is not None:
            app.state.worker_stop.set()

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "sms_configured": settings.sms_configured,
            "email_configured": settings.email_configured,
            "redis": bool(settings.redis_url),
        }

    @app.get("/", response_class=HTMLResponse)
    def kiosk_page() -> str:
        """Return a minimal registration page.

        This page posts to `/kiosk/join` when the button is clicked.
        """
        return f"""
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8" />
    <title>{settings.business_name}</title>
    <style>
        body {{ font-family: sans-serif; text-align: center; margin-top: 50px; }}
        input {{ font-size: 1.2rem; padding: 0.5rem; margin: 0.3rem; }}
        button {{ font-size: 2rem; padding: 1rem 2rem; }}
    </style>
</head>
<body>
    <h1>Get your ticket</h1>
    <form method="post" action="/kiosk/join">
        <input type="text" name="name" placeholder="Name" required /><br/>
        <input type="tel" name="phone_number" placeholder="Phone number" required /><br/>
        <input type="email" name="email" placeholder="Email" required /><br/><br/>
        <button type="submit">Join</button>
    </form>
</body>
</html>
    """

    def _register(name: str, phone_number: str, email: str) -> TicketOut:
        for _ in range(REGISTER_ATTEMPTS):
            try:
                ticket = service.register(name, phone_number, email)
            except Conflict as e:
                logger.warning(f"Ticket number race, retrying: {e}")
                continue
            except StoreError as e:
                logger.error(f"Error adding ticket: {e}")
                raise HTTPException(status_code=503, detail=TRY_AGAIN)
            return TicketOut.build(ticket, position_of(ticket, service.list_waiting()))
        raise HTTPException(status_code=503, detail=TRY_AGAIN)

    @app.post("/tickets", status_code=201, response_model=TicketOut)
    def register_ticket(request: RegisterRequest) -> TicketOut:
        return _register(request.name.strip(), request.phone_number.strip(), request.email.strip())

    @app.post("/kiosk/join", response_class=PlainTextResponse)
    async def kiosk_join(request: Request) -> str:
        """Create a ticket from the kiosk form."""
        body_bytes = await request.body()
        try:
            parsed = urllib.parse.parse_qs(body_bytes.decode("utf-8"))
        except UnicodeDecodeError:
            raise HTTPException(status_code=400, detail="Form data must be UTF-8 encoded")
        name = parsed.get("name", [""])[0].strip()
        phone_number = parsed.get("phone_number", [""])[0].strip()
        email = parsed.get("email", [""])[0].strip()
        if not name or not phone_number or not email:
            raise HTTPException(status_code=400, detail="Name, phone number and email are required")
        ticket = await run_in_threadpool(_register, name, phone_number, email)
        return f"Your ticket is #{ticket.ticket_number}. You are #{ticket.position} in line. Please stay nearby."

    @app.get("/queue", response_model=List[TicketOut])
    def waiting_queue() -> List[TicketOut]:
        waiting = service.list_waiting()
        return [TicketOut.build(t, position_of(t, waiting)) for t in waiting]

    @app.get("/queue/called", response_model=Optional[TicketOut])
    def called_ticket() -> Optional[TicketOut]:
        ticket = service.get_called_ticket()
        return TicketOut.build(ticket) if ticket else None

    @app.get("/tickets/{ticket_number}", response_model=TicketStatusView)
    def ticket_status(ticket_number: int) -> TicketStatusView:
        try:
            ticket = service.get_ticket(ticket_number)
        except StoreError as e:
            logger.error(f"Error fetching ticket #{ticket_number}: {e}")
            raise HTTPException(status_code=503, detail="Failed to load ticket. Please try again.")
        if not ticket:
            raise HTTPException(status_code=404, detail="Ticket not found")
        waiting = service.list_waiting()
        called = service.get_called_ticket()
        return TicketStatusView(
            ticket=TicketOut.build(ticket, position_of(ticket, waiting)),
            now_serving=called.ticket_number if called else None,
            next_up=waiting[0].ticket_number if waiting else None,
            queue_length=len(waiting),
        )

    @app.get("/search", response_model=List[TicketOut])
    def search(phone: str) -> List[TicketOut]:
        tickets = service.search_by_phone(phone)
        waiting = service.list_waiting()
        return [TicketOut.build(t, position_of(t, waiting)) for t in tickets]

    @app.post("/admin/call-next", response_model=CallNextResponse)
    def call_next() -> CallNextResponse:
        try:
            result = service.call_next_detailed()
        except StoreError as e:
            logger.error(f"Error calling next customer: {e}")
            raise HTTPException(status_code=503, detail="Failed to call next customer. Please try again.")
        return CallNextResponse(
            called=TicketOut.build(result.called) if result.called else None,
            next_up=TicketOut.build(result.next_up, 1) if result.next_up else None,
            deliveries=[
                DeliveryOut(event=d.event, channel=d.channel, ticket_number=d.ticket_number, ok=d.ok)
                for d in result.deliveries
            ],
        )

    @app.delete("/admin/tickets/{ticket_id}")
    def remove_ticket(ticket_id: str) -> Dict[str, Any]:
        try:
            removed = service.remove_ticket(ticket_id)
        except StoreError as e:
            logger.error(f"Error removing ticket {ticket_id}: {e}")
            raise HTTPException(status_code=503, detail="Failed to remove ticket. Please try again.")
        if not removed:
            raise HTTPException(status_code=404, detail="Ticket not found")
        return {"removed": True, "id": ticket_id}

    @app.get("/events")
    async def events(request: Request, view: str = "waiting"):
        """Server-Sent Events stream refreshed on every ticket change."""
        if view not in ("waiting", "called"):
            raise HTTPException(status_code=400, detail="view must be 'waiting' or 'called'")
        return StreamingResponse(
            view_stream(live_sync, view, request.is_disconnected),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
