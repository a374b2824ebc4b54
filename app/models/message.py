from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.database import Base, BigIntId, JSONType, utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    dialog_id = Column(String(255), ForeignKey("dialogs.dialog_id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # user, assistant, system
    content = Column(Text, nullable=False)
    tokens_in = Column(Integer, nullable=False, default=0)
    tokens_out = Column(Integer, nullable=False, default=0)
    previous_response_id = Column(String(255))
    meta = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    dialog = relationship("Dialog", back_populates="messages")
