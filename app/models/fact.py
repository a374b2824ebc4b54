from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base, BigIntId, utcnow


class Fact(Base):
    __tablename__ = "facts"
    __table_args__ = (UniqueConstraint("dialog_id", "key", name="uq_facts_dialog_key"),)

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    dialog_id = Column(String(255), ForeignKey("dialogs.dialog_id", ondelete="CASCADE"), nullable=False)
    key = Column(String(64), nullable=False)
    value = Column(Text, nullable=False)
    source_message_id = Column(BigInteger, ForeignKey("messages.id", ondelete="SET NULL"))
    confidence = Column(Numeric(3, 2, asdecimal=False), nullable=False, default=1.0)
    discovered_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    dialog = relationship("Dialog", back_populates="facts")
