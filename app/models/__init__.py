from app.models.bot_config import BotConfig
from app.models.bot_session import BotSession
from app.models.dialog import Dialog
from app.models.fact import Fact
from app.models.message import Message

__all__ = [
    "BotConfig",
    "BotSession",
    "Dialog",
    "Fact",
    "Message",
]
