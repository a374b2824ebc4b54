import re
import unicodedata
from typing import Optional

from app.logging_config import get_logger
from app.services.llm import LLMProvider

logger = get_logger("owner_name_service")

NAME_MODEL = "gpt-4o-mini"
PLACEHOLDER_NAMES = {"name", "клиент", "client"}
VALID_NAME_RE = re.compile(r"^[А-ЯЁ][а-яё]+(?:-[А-ЯЁ][а-яё]+)?$")

NAME_SYSTEM_PROMPT = "Ты - помощник для извлечения имён. Отвечай ТОЛЬКО извлечённым именем или пустой строкой."
NAME_PROMPT_TEMPLATE = (
    'Из строки "{raw}" извлеки чистое имя владельца на русском языке.\n\n'
    "Правила:\n"
    "1. Удали скобки, кавычки, эмодзи, телефон/почту, теги типа «(собственник)», «ООО», «агент»\n"
    "2. Удали капслок-приставки, хвосты после «/», «,», «—»\n"
    "3. Нормализуй пробелы\n"
    "4. Возьми первое слово, если это русское имя (буквы А-Я, Ё, дефис допустим)\n"
    "5. Первая буква заглавная, остальные строчные\n"
    "6. Если имя не найдено — верни пустую строку\n\n"
    "ВАЖНО: Верни ТОЛЬКО имя (одно слово) или пустую строку. Без объяснений и лишнего текста."
)

_BRACKETS_RE = re.compile(r"[\"'()\[\]<>«»]")
_TAGS_RE = re.compile(r"\b(собственник|собст\.?|соб\.?|владелец|агент|ооо|ип)\b", re.IGNORECASE)
_PHONE_RE = re.compile(r"\+?\d[\d\s\-()]{6,}")
_EMAIL_RE = re.compile(r"[\w.+-]+@\w+\.[\w.]+")
_TAIL_RE = re.compile(r"(/|,|—|\s-\s).*")
_NAME_RE = re.compile(r"\b[А-ЯЁ][а-яё]+(?:-[А-ЯЁ][а-яё]+)?\b")
_CYRILLIC_TOKEN_RE = re.compile(r"^([А-Яа-яЁё]+(?:-[А-Яа-яЁё]+)?)")


def is_placeholder_name(raw: Optional[str]) -> bool:
    normalized = (raw or "").strip().lower()
    return not normalized or normalized in PLACEHOLDER_NAMES


def clean_owner_name(raw: Optional[str]) -> str:
    """Regex cleanup of a CRM owner name: "ИВАНОВА Мария (собственник) +7 900..." -> "Мария"."""
    if is_placeholder_name(raw):
        return ""
    text = "".join(ch for ch in raw if unicodedata.category(ch) not in ("So", "Sk"))
    text = _BRACKETS_RE.sub(" ", text)
    text = _TAGS_RE.sub(" ", text)
    text = _PHONE_RE.sub(" ", text)
    text = _EMAIL_RE.sub(" ", text)
    text = _TAIL_RE.sub(" ", text)
    text = re.sub(r"\s+", " ", text).strip()

    match = _NAME_RE.search(text)
    if match:
        return match.group(0)
    match = _CYRILLIC_TOKEN_RE.match(text)
    if match:
        return "-".join(part.capitalize() for part in match.group(1).split("-"))
    return ""


def extract_owner_name_with_ai(raw: Optional[str], llm: LLMProvider) -> str:
    """Clean owner name via the LLM; "" when no valid Russian first name comes back.

    Falls back to clean_owner_name() only when the LLM call itself fails.
    """
    if is_placeholder_name(raw):
        logger.info("Skipping owner name extraction", extra={"context": {"raw_name": raw}})
        return ""

    try:
        response = llm.chat(
            NAME_SYSTEM_PROMPT,
            [{"role": "user", "content": NAME_PROMPT_TEMPLATE.format(raw=raw)}],
            max_tokens=50,
            model=NAME_MODEL,
            temperature=0.0,
        )
    except Exception as exc:
        fallback = clean_owner_name(raw)
        logger.warning(
            "Owner name LLM call failed, using regex cleanup",
            extra={"context": {"raw_name": raw, "error": str(exc), "fallback": fallback}},
        )
        return fallback

    name = (response.content or "").strip()
    if name and VALID_NAME_RE.match(name):
        return name

    logger.warning("LLM returned no valid owner name", extra={"context": {"raw_name": raw, "ai_response": name}})
    return ""
