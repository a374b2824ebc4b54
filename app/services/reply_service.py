import re
import time
from typing import Any, Mapping, Optional, Protocol

from app.logging_config import get_logger

logger = get_logger("reply_service")

# Italic runs first: converting bold first would turn every *bold* into _italic_.
_ITALIC_RE = re.compile(r"(?<![*\w])\*(?![*\s])(.+?)(?<![*\s])\*(?![*\w])")
_BOLD_RE = re.compile(r"\*\*(?!\s)(.+?)(?<!\s)\*\*")
_STRIKE_RE = re.compile(r"~~(.+?)~~")
_MONO_RE = re.compile(r"(?<!`)`([^`\n]+)`(?!`)")


class MessageSender(Protocol):
    def send_message(self, chat_id: str, message: str) -> Any: ...


def convert_markdown_to_whatsapp(text: Optional[str]) -> str:
    """Markdown from the model to WhatsApp markup.

    **bold** -> *bold*, *italic* -> _italic_, ~~strike~~ -> ~strike~, `code` -> ```code```
    """
    if not text:
        return ""
    text = _ITALIC_RE.sub(r"_\1_", text)
    text = _BOLD_RE.sub(r"*\1*", text)
    text = _STRIKE_RE.sub(r"~\1~", text)
    text = _MONO_RE.sub(r"```\1```", text)
    return text


def render_template(template: Optional[str], variables: Mapping[str, Any]) -> str:
    """Replace {name} placeholders. Unknown placeholders are left as is."""
    if not template:
        return ""
    rendered = template
    for key, value in variables.items():
        rendered = rendered.replace("{" + key + "}", "" if value is None else str(value))
    return rendered


def send_with_delay(
    sender: MessageSender,
    chat_id: str,
    text: str,
    delay_ms: int = 0,
    sleep_func=time.sleep,
) -> bool:
    """Wait delay_ms, then send. Never raises: a failed send is logged and returns False."""
    if delay_ms > 0:
        sleep_func(delay_ms / 1000)
    try:
        sender.send_message(chat_id, text)
    except Exception as exc:
        logger.error(
            "Failed to send WhatsApp message",
            extra={"context": {"chat_id": chat_id, "error": str(exc), "length": len(text)}},
        )
        return False
    return True
