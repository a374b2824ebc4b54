from typing import Optional

from pydantic import BaseModel


class SenderData(BaseModel):
    chatId: Optional[str] = None
    sender: Optional[str] = None
    senderName: Optional[str] = None


class TextMessageData(BaseModel):
    textMessage: Optional[str] = None


class MessageData(BaseModel):
    typeMessage: Optional[str] = None
    textMessageData: Optional[TextMessageData] = None


class GreenApiMessage(BaseModel):
    """One GreenAPI notification item (webhook body or polled message)."""

    chatId: Optional[str] = None
    senderData: Optional[SenderData] = None
    textMessage: Optional[str] = None
    messageData: Optional[MessageData] = None
    idMessage: Optional[str] = None
    type: Optional[str] = None
    typeMessage: Optional[str] = None
    typeWebhook: Optional[str] = None
    timestamp: Optional[int] = None

    @property
    def resolved_chat_id(self) -> Optional[str]:
        if self.chatId:
            return self.chatId
        if self.senderData:
            return self.senderData.chatId
        return None

    @property
    def resolved_text(self) -> Optional[str]:
        if self.textMessage:
            return self.textMessage
        if self.messageData and self.messageData.textMessageData:
            return self.messageData.textMessageData.textMessage
        return None

    @property
    def resolved_type(self) -> Optional[str]:
        if self.type:
            return self.type
        if self.typeMessage:
            return self.typeMessage
        if self.messageData:
            return self.messageData.typeMessage
        return None


class WebhookAck(BaseModel):
    status: str = "ok"
    queued: bool = False
    detail: Optional[str] = None
