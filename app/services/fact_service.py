import json
import re
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Message
from app.services.conversation_service import clamp_confidence, upsert_fact
from app.services.llm import LLMProvider

logger = get_logger("fact_service")

FACT_MODEL = "gpt-4o-mini"
FACT_MAX_TOKENS = 300

FACT_KEYS = {
    "price": "Цене недвижимости",
    "rooms": "Количестве комнат",
    "area": "Площади",
    "floor": "Этаже",
    "location": "Адресе/районе",
    "available_from": "Дате доступности",
    "tenant_preferences": "Предпочтениях по арендаторам",
    "contact_info": "Контактных данных",
    "special_conditions": "Особых условиях",
}

FACT_SYSTEM_PROMPT = (
    "Ты - помощник для извлечения структурированных фактов из текста. Отвечай ТОЛЬКО валидным JSON массивом."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def build_fact_prompt(message_text: str) -> str:
    topics = "\n".join(f'- {label} (ключ: "{key}")' for key, label in FACT_KEYS.items())
    return (
        "Проанализируй следующее сообщение клиента и извлеки ключевые факты в формате JSON.\n\n"
        "Извлекай только ЯВНО указанные факты о:\n"
        f"{topics}\n\n"
        'Верни ТОЛЬКО JSON массив объектов формата: [{"key": "название_ключа", "value": "значение", '
        '"confidence": число_от_0_до_1}]\n'
        "Если фактов нет, верни пустой массив [].\n\n"
        f'Сообщение клиента: "{message_text}"'
    )


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def parse_facts_response(content: str) -> list[dict]:
    """Parse the model's JSON array of {key, value, confidence}.

    Tolerates a ```json fence. Anything that is not a JSON array yields [].
    """
    content = (content or "").strip()
    if not content:
        return []
    content = _FENCE_RE.sub("", content).strip()
    try:
        data = json.loads(content)
    except ValueError:
        logger.info("Fact extraction returned non-JSON output", extra={"context": {"preview": content[:200]}})
        return []
    if not isinstance(data, list):
        return []

    facts = []
    for item in data:
        if not isinstance(item, dict) or item.get("key") is None or item.get("value") is None:
            continue
        key = str(item["key"]).strip()
        value = _as_text(item["value"]).strip()
        if not key or not value:
            continue
        facts.append(
            {
                "key": key[:64],
                "value": value,
                "confidence": clamp_confidence(item.get("confidence", 1.0)),
            }
        )
    return facts


def extract_facts(db: Session, dialog_id: str, message: Message, llm: LLMProvider) -> int:
    """Extract facts from a user message and merge them by confidence.

    Best effort: LLM, parse and write failures are logged and yield 0. Commit
    pending work before calling, a failed write rolls the session back.
    """
    if message.role != "user":
        return 0

    context = {"dialog_id": dialog_id, "message_id": message.id}
    try:
        response = llm.chat(
            FACT_SYSTEM_PROMPT,
            [{"role": "user", "content": build_fact_prompt(message.content)}],
            max_tokens=FACT_MAX_TOKENS,
            model=FACT_MODEL,
            temperature=0.0,
        )
    except Exception as exc:
        logger.error("Fact extraction LLM call failed", extra={"context": {**context, "error": str(exc)}})
        return 0

    facts = parse_facts_response(response.content)
    if not facts:
        logger.info("No facts found in message", extra={"context": context})
        return 0

    saved = 0
    try:
        for fact in facts:
            if upsert_fact(db, dialog_id, fact["key"], fact["value"], fact["confidence"], message.id):
                saved += 1
        db.flush()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to store extracted facts", extra={"context": {**context, "error": str(exc)}})
        return 0

    if saved:
        logger.info("Facts extracted", extra={"context": {**context, "facts_count": saved}})
    return saved
