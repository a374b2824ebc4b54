from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from app.database import dialect_insert, utcnow
from app.models import BotSession
from app.services import state_machine
from app.services.state_machine import DialogState, SessionStatus


def get_or_create_session(
    db: Session,
    chat_id: str,
    platform: str,
    *,
    object_id: Optional[int] = None,
    bot_config_id: Optional[int] = None,
) -> BotSession:
    """Get or create the session for (chat_id, platform). New rows start running."""
    stmt = (
        dialect_insert(db, BotSession)
        .values(
            chat_id=chat_id,
            platform=platform,
            object_id=object_id,
            bot_config_id=bot_config_id,
            status=SessionStatus.RUNNING.value,
            dialog_state={"state": DialogState.INITIAL.value},
            started_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["chat_id", "platform"])
    )
    db.execute(stmt)
    return find_session(db, chat_id, platform)


def find_session(db: Session, chat_id: str, platform: str) -> Optional[BotSession]:
    return db.query(BotSession).filter(BotSession.chat_id == chat_id, BotSession.platform == platform).first()


def get_running_session(db: Session, chat_id: str, platform: str) -> Optional[BotSession]:
    session = find_session(db, chat_id, platform)
    if session and session.is_running:
        return session
    return None


def list_running_sessions(db: Session, platform: Optional[str] = None) -> list[BotSession]:
    query = db.query(BotSession).filter(BotSession.status == SessionStatus.RUNNING.value)
    if platform:
        query = query.filter(BotSession.platform == platform)
    return query.order_by(BotSession.id).all()


def start_session(session: BotSession) -> None:
    session.status = state_machine.start_session(SessionStatus(session.status)).value
    session.started_at = session.started_at or utcnow()
    session.stopped_at = None


def stop_session(db: Session, session: BotSession) -> bool:
    """Stop a running session. Returns False when it was not running."""
    if not session.is_running:
        return False
    session.status = state_machine.stop_session(SessionStatus(session.status)).value
    session.stopped_at = utcnow()
    db.flush()
    return True


def set_dialog_state(session: BotSession, state: DialogState) -> None:
    session.dialog_state = {**(session.dialog_state or {}), "state": state.value}


def merge_session_metadata(session: BotSession, values: dict[str, Any]) -> None:
    session.session_metadata = {**(session.session_metadata or {}), **values}
