import asyncio
import os

from fastapi import Depends, FastAPI
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger, setup_logging
from app.models import BotSession, Dialog, Fact, Message
from app.routers import bots, webhook
from app.runtime import get_dialog_service, get_greenapi_service, get_inbound_gate, shutdown_runtime
from app.services.session_service import list_running_sessions

setup_logging(settings.log_level)

app = FastAPI(
    title="Outreach Bot API",
    description="LLM-driven WhatsApp conversations with property owners",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(bots.router)

poll_logger = get_logger("poll_worker")
_poll_worker_task: asyncio.Task | None = None


def _is_poll_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.poll_worker_enabled


async def poll_once() -> int:
    """Fetch recent incoming messages from GreenAPI and feed them through the gate."""
    greenapi = get_greenapi_service()
    messages = await asyncio.to_thread(greenapi.get_last_incoming_messages, settings.poll_minutes)
    if not messages:
        return 0
    return await webhook.process_inbound_payload({"messages": messages}, get_inbound_gate(), get_dialog_service())


async def _poll_worker_loop() -> None:
    interval_seconds = max(settings.poll_interval_seconds, 0.5)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            handled = await poll_once()
            if handled:
                poll_logger.info("Poll worker processed", extra={"context": {"handled": handled}})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            poll_logger.error(
                "Poll worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_poll_worker() -> None:
    global _poll_worker_task
    if not _is_poll_worker_enabled():
        return
    if _poll_worker_task is None or _poll_worker_task.done():
        _poll_worker_task = asyncio.create_task(_poll_worker_loop())
        poll_logger.info("Poll worker started")


@app.on_event("shutdown")
async def stop_workers() -> None:
    global _poll_worker_task
    if _poll_worker_task is not None:
        _poll_worker_task.cancel()
        try:
            await _poll_worker_task
        except asyncio.CancelledError:
            pass
        _poll_worker_task = None
    await shutdown_runtime()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "dialogs": db.query(Dialog).count(),
        "messages": db.query(Message).count(),
        "facts": db.query(Fact).count(),
        "sessions": db.query(BotSession).count(),
        "running_sessions": len(list_running_sessions(db)),
    }
