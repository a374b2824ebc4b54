from app.schemas.bot import BotActionResponse, StartBotRequest
from app.schemas.inbound import GreenApiMessage, WebhookAck

__all__ = ["BotActionResponse", "GreenApiMessage", "StartBotRequest", "WebhookAck"]
