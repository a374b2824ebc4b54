from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Dialog, Message
from app.services.conversation_service import update_summary
from app.services.llm import LLMProvider
from app.services.message_service import recent_messages

logger = get_logger("summary_service")

SUMMARY_MODEL = "gpt-4o-mini"
SUMMARY_MAX_TOKENS = 200
SUMMARY_MIN_MESSAGES = 3

SUMMARY_SYSTEM_PROMPT = "Ты - помощник, который создает краткие резюме диалогов. Отвечай только кратким резюме."
SUMMARY_PROMPT_TEMPLATE = (
    "Создай краткое резюме (2-3 предложения) следующего диалога между ассистентом Capital Mars и клиентом. "
    "Укажи основные темы, вопросы клиента и текущий статус обсуждения:\n\n{transcript}"
)


def build_transcript(messages: list[Message]) -> str:
    lines = []
    for message in messages:
        label = "Клиент" if message.role == "user" else "Ассистент"
        lines.append(f"{label}: {message.content}")
    return "\n".join(lines)


def generate_summary(db: Session, dialog: Dialog, llm: LLMProvider, force: bool = False) -> Optional[str]:
    """Refresh the dialog's running summary. Returns the new summary or None if skipped."""
    messages = recent_messages(db, dialog.dialog_id)
    if not messages:
        return None
    if not force and len(messages) < SUMMARY_MIN_MESSAGES:
        return None

    try:
        response = llm.chat(
            SUMMARY_SYSTEM_PROMPT,
            [{"role": "user", "content": SUMMARY_PROMPT_TEMPLATE.format(transcript=build_transcript(messages))}],
            max_tokens=SUMMARY_MAX_TOKENS,
            model=SUMMARY_MODEL,
        )
    except Exception as exc:
        logger.error(
            "Summary generation failed",
            extra={"context": {"dialog_id": dialog.dialog_id, "error": str(exc)}},
        )
        return None

    summary = (response.content or "").strip()
    if not summary:
        logger.warning("Summary generation returned empty text", extra={"context": {"dialog_id": dialog.dialog_id}})
        return None

    update_summary(db, dialog, summary)
    logger.info(
        "Dialog summary updated",
        extra={"context": {"dialog_id": dialog.dialog_id, "messages": len(messages), "forced": force}},
    )
    return summary
