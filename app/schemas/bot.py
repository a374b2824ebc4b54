import re
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


def normalize_chat_id(value: Any) -> str:
    """Phone number or WhatsApp chat id -> "{digits}@c.us"; ids with "@" pass through."""
    text = str(value or "").strip()
    if not text or "@" in text:
        return text
    digits = re.sub(r"\D", "", text)
    return f"{digits}@c.us" if digits else text


class StartBotRequest(BaseModel):
    chat_id: str = Field(validation_alias=AliasChoices("chat_id", "chatId", "phone"))
    object_id: int = Field(validation_alias=AliasChoices("object_id", "objectId"))
    bot_config_id: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("bot_config_id", "botConfigId"),
    )

    @field_validator("chat_id", mode="before")
    @classmethod
    def _normalize_chat_id(cls, value):
        return normalize_chat_id(value)


class BotActionResponse(BaseModel):
    success: bool
    chat_id: Optional[str] = None
    message: Optional[str] = None
    data: Optional[dict] = None
