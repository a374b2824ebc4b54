from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from app.database import dialect_insert, utcnow
from app.logging_config import get_logger
from app.models import Dialog, Fact, Message
from app.services.state_machine import DialogState, transition

logger = get_logger("conversation_service")


def build_dialog_id(client_id: str, brand: str) -> str:
    return f"{brand}_{client_id}"


def get_or_create_dialog(db: Session, client_id: str, brand: str) -> Dialog:
    """Get or create the dialog for (client_id, brand).

    Concurrent callers race on the primary key, never on a read-then-insert.
    """
    dialog_id = build_dialog_id(client_id, brand)
    stmt = (
        dialect_insert(db, Dialog)
        .values(dialog_id=dialog_id, client_id=client_id, brand=brand)
        .on_conflict_do_nothing(index_elements=["dialog_id"])
    )
    result = db.execute(stmt)
    if result.rowcount:
        logger.info("Dialog created", extra={"context": {"dialog_id": dialog_id}})
    return db.get(Dialog, dialog_id)


def find_dialog(db: Session, client_id: str, brand: str) -> Optional[Dialog]:
    return db.get(Dialog, build_dialog_id(client_id, brand))


def update_summary(db: Session, dialog: Dialog, summary: Optional[str]) -> None:
    dialog.summary = summary
    db.flush()


def update_dialog_state(db: Session, dialog: Dialog, new_state: DialogState) -> DialogState:
    """Move the dialog to new_state. Raises InvalidTransitionError if not allowed."""
    current = DialogState(dialog.current_state or DialogState.INITIAL.value)
    state = transition(current, new_state)
    dialog.current_state = state.value
    db.flush()
    return state


def merge_dialog_metadata(dialog: Dialog, values: dict[str, Any]) -> None:
    # reassign so the JSON column is flagged dirty
    dialog.dialog_metadata = {**(dialog.dialog_metadata or {}), **values}


def clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        confidence = 1.0
    return round(min(max(confidence, 0.0), 1.0), 2)


def upsert_fact(
    db: Session,
    dialog_id: str,
    key: str,
    value: str,
    confidence: Any = 1.0,
    source_message_id: Optional[int] = None,
) -> bool:
    """Insert or overwrite a fact. An existing fact is replaced only when the new
    confidence is >= the stored one (ties go to the newer value).

    Returns True when a row was written.
    """
    confidence = clamp_confidence(confidence)
    now = utcnow()
    stmt = dialect_insert(db, Fact).values(
        dialog_id=dialog_id,
        key=key,
        value=value,
        confidence=confidence,
        source_message_id=source_message_id,
        discovered_at=now,
        created_at=now,
        updated_at=now,
    )
    facts = Fact.__table__
    stmt = stmt.on_conflict_do_update(
        index_elements=["dialog_id", "key"],
        set_={
            "value": stmt.excluded["value"],
            "confidence": stmt.excluded["confidence"],
            "source_message_id": stmt.excluded["source_message_id"],
            "discovered_at": stmt.excluded["discovered_at"],
            "updated_at": stmt.excluded["updated_at"],
        },
        where=facts.c.confidence <= stmt.excluded["confidence"],
    )
    result = db.execute(stmt)
    return result.rowcount > 0


def list_facts(db: Session, dialog_id: str) -> list[Fact]:
    return db.query(Fact).filter(Fact.dialog_id == dialog_id).order_by(Fact.key).all()


def count_facts(db: Session, dialog_id: str) -> int:
    return db.query(Fact).filter(Fact.dialog_id == dialog_id).count()


def delete_history(db: Session, dialog_id: str) -> tuple[int, int]:
    """Hard-delete all messages and facts of a dialog. Returns (messages, facts) deleted."""
    facts_deleted = db.query(Fact).filter(Fact.dialog_id == dialog_id).delete(synchronize_session=False)
    messages_deleted = (
        db.query(Message).filter(Message.dialog_id == dialog_id).delete(synchronize_session=False)
    )
    return messages_deleted, facts_deleted


def reset_dialog(db: Session, dialog: Dialog) -> None:
    """Forget summary, provider id and state. The row itself stays."""
    update_dialog_state(db, dialog, DialogState.INITIAL)
    dialog.summary = None
    dialog.provider_conversation_id = None
    db.flush()
