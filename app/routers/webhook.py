from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from starlette.requests import ClientDisconnect

from app.logging_config import get_logger
from app.runtime import get_dialog_service, get_inbound_gate
from app.schemas.inbound import WebhookAck
from app.services.dialog_service import DialogService
from app.services.inbound_service import InboundGate, InboundMessage

logger = get_logger("webhook")

router = APIRouter()


async def _read_payload(request: Request) -> Any:
    """JSON body of the request, or a WebhookAck when there is nothing to process."""
    try:
        return await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookAck(detail="Client disconnected")
    except Exception as exc:
        try:
            raw = await request.body()
        except ClientDisconnect:
            logger.info("Webhook client disconnected during body read")
            return WebhookAck(detail="Client disconnected")
        if not raw or not raw.strip():
            logger.info("Webhook probe with empty body")
            return WebhookAck(detail="Empty payload")

        logger.warning(
            "Webhook payload is not valid JSON",
            extra={
                "context": {
                    "error": str(exc),
                    "body_preview": raw[:200].decode("utf-8", "ignore"),
                }
            },
        )
        return WebhookAck(status="ignored", detail="Invalid JSON payload")


async def process_inbound_payload(payload: Any, gate: InboundGate, dialog_service: DialogService) -> int:
    async def _handle(message: InboundMessage) -> None:
        result = await dialog_service.handle_incoming(message.chat_id, message.text, message.meta)
        if not result.ok:
            logger.info(
                "Inbound message not buffered",
                extra={"context": {"chat_id": message.chat_id, "reason": result.error_code}},
            )

    handled = await gate.process(payload, _handle)
    logger.debug("Inbound payload processed", extra={"context": {"handled": handled}})
    return handled


@router.post("/webhook/greenapi", response_model=WebhookAck)
async def greenapi_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    gate: InboundGate = Depends(get_inbound_gate),
    dialog_service: DialogService = Depends(get_dialog_service),
):
    """Accept a GreenAPI notification and process it after the response is sent."""
    payload = await _read_payload(request)
    if isinstance(payload, WebhookAck):
        return payload
    if not isinstance(payload, (dict, list)):
        return WebhookAck(status="ignored", detail="Invalid payload format")

    background_tasks.add_task(process_inbound_payload, payload, gate, dialog_service)
    return WebhookAck(queued=True)
