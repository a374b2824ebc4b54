from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from app.database import Base, BigIntId, JSONType, utcnow


class BotSession(Base):
    __tablename__ = "bot_sessions"
    # one row per chat and platform, so at most one running session per pair
    __table_args__ = (UniqueConstraint("chat_id", "platform", name="uq_bot_sessions_chat_platform"),)

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    chat_id = Column(String(255), nullable=False)
    object_id = Column(Integer)
    platform = Column(String(32), nullable=False, default="whatsapp")
    bot_config_id = Column(Integer, ForeignKey("bot_configs.id", ondelete="SET NULL"))
    status = Column(String(16), nullable=False, default="running")  # running, stopped, completed
    dialog_state = Column(JSONType, nullable=False, default=dict)  # {"state": "initial"}
    session_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    started_at = Column(DateTime(timezone=True))
    stopped_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_running(self) -> bool:
        return self.status == "running"
