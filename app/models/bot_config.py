from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

from app.database import Base, JSONType, utcnow


class BotConfig(Base):
    __tablename__ = "bot_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    platform = Column(String(32), nullable=False, default="whatsapp")
    prompt = Column(Text)
    temperature = Column(Float, default=0.7)
    max_tokens = Column(Integer, nullable=False, default=2000)
    is_active = Column(Boolean, nullable=False, default=True)
    kickoff_message = Column(Text)
    vector_stores = Column(JSONType)  # [{"name": ..., "id": "vs_..."}]
    openai_model = Column(String(64))
    openai_service_tier = Column(String(32))
    settings = Column(JSONType)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def vector_store_ids(self) -> list[str]:
        stores = self.vector_stores or []
        return [store["id"] for store in stores if isinstance(store, dict) and store.get("id")]
