from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import relationship

from app.database import Base, JSONType, utcnow


class Dialog(Base):
    __tablename__ = "dialogs"

    # "{brand}_{client_id}", the natural key doubles as the uniqueness guard
    dialog_id = Column(String(255), primary_key=True)
    client_id = Column(String(255), nullable=False, index=True)
    brand = Column(String(64), nullable=False, default="capital_mars")
    summary = Column(Text)
    provider_conversation_id = Column(String(255))  # last LLM response id
    current_state = Column(String(32), nullable=False, default="initial")  # initial, active, completed
    dialog_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    messages = relationship("Message", back_populates="dialog")
    facts = relationship("Fact", back_populates="dialog")
