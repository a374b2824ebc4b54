from fastapi import APIRouter, Depends, HTTPException

from app.runtime import get_dialog_service
from app.schemas.bot import BotActionResponse, StartBotRequest, normalize_chat_id
from app.services import result as codes
from app.services.dialog_service import DialogService

router = APIRouter(prefix="/bots", tags=["bots"])


@router.post("/start", response_model=BotActionResponse)
def start_bot(request: StartBotRequest, dialog_service: DialogService = Depends(get_dialog_service)):
    """Start (or restart) the bot for a chat and send the kickoff message on first run."""
    result = dialog_service.initialize(request.chat_id, request.object_id, request.bot_config_id)
    if not result.ok:
        status_code = 404 if result.error_code == codes.CONTEXT_NOT_FOUND else 400
        raise HTTPException(status_code=status_code, detail=result.error)
    return BotActionResponse(success=True, chat_id=request.chat_id, message="Bot started", data=result.value)


@router.post("/stop-all", response_model=BotActionResponse)
def stop_all_bots(dialog_service: DialogService = Depends(get_dialog_service)):
    stopped = dialog_service.stop_all()
    return BotActionResponse(success=True, message=f"Stopped {stopped} bots", data={"stopped": stopped})


@router.post("/{chat_id}/stop", response_model=BotActionResponse)
def stop_bot(chat_id: str, dialog_service: DialogService = Depends(get_dialog_service)):
    chat_id = normalize_chat_id(chat_id)
    result = dialog_service.stop(chat_id)
    message = "Bot stopped" if result.value.get("stopped") else "Bot was not running"
    return BotActionResponse(success=True, chat_id=chat_id, message=message, data=result.value)


@router.post("/{chat_id}/clear", response_model=BotActionResponse)
async def clear_bot(chat_id: str, dialog_service: DialogService = Depends(get_dialog_service)):
    """Delete the chat's history and facts. The session and dialog rows stay."""
    chat_id = normalize_chat_id(chat_id)
    result = await dialog_service.clear(chat_id)
    return BotActionResponse(success=True, chat_id=chat_id, message="Dialog cleared", data=result.value)


@router.get("/{chat_id}", response_model=BotActionResponse)
def show_bot(chat_id: str, dialog_service: DialogService = Depends(get_dialog_service)):
    chat_id = normalize_chat_id(chat_id)
    info = dialog_service.describe(chat_id)
    if info is None:
        raise HTTPException(status_code=404, detail="Bot session not found")
    return BotActionResponse(success=True, chat_id=chat_id, data=info)
