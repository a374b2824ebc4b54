from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import exists
from sqlalchemy.orm import Session

from app.database import utcnow
from app.models import Fact, Message


def append_message(
    db: Session,
    dialog_id: str,
    role: str,
    content: str,
    *,
    meta: Optional[dict[str, Any]] = None,
    previous_response_id: Optional[str] = None,
    tokens_in: int = 0,
    tokens_out: int = 0,
) -> Message:
    """Append a message to the dialog history."""
    message = Message(
        dialog_id=dialog_id,
        role=role,
        content=content,
        meta=meta or {},
        previous_response_id=previous_response_id,
        tokens_in=tokens_in or 0,
        tokens_out=tokens_out or 0,
        created_at=utcnow(),
    )
    db.add(message)
    db.flush()
    return message


def recent_messages(db: Session, dialog_id: str, limit: Optional[int] = None) -> list[Message]:
    """Last `limit` messages (all when None), oldest first."""
    query = db.query(Message).filter(Message.dialog_id == dialog_id)
    if limit is None:
        return query.order_by(Message.created_at.asc(), Message.id.asc()).all()
    newest = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
    return list(reversed(newest))


def count_messages(db: Session, dialog_id: str, role: Optional[str] = None) -> int:
    query = db.query(Message).filter(Message.dialog_id == dialog_id)
    if role:
        query = query.filter(Message.role == role)
    return query.count()


def user_messages_without_facts(db: Session, dialog_id: str) -> list[Message]:
    has_fact = exists().where(Fact.source_message_id == Message.id)
    return (
        db.query(Message)
        .filter(Message.dialog_id == dialog_id, Message.role == "user", ~has_fact)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )
