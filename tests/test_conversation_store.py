from concurrent.futures import ThreadPoolExecutor

import pytest

from app.models import BotSession, Dialog, Fact
from app.services.conversation_service import (
    build_dialog_id,
    clamp_confidence,
    delete_history,
    find_dialog,
    get_or_create_dialog,
    reset_dialog,
    update_dialog_state,
    upsert_fact,
)
from app.services.message_service import (
    append_message,
    count_messages,
    recent_messages,
    user_messages_without_facts,
)
from app.services.session_service import (
    get_or_create_session,
    get_running_session,
    list_running_sessions,
    stop_session,
)
from app.services.state_machine import DialogState

CHAT_ID = "79990000000@c.us"
BRAND = "capital_mars"


class TestDialogGetOrCreate:
    def test_dialog_id_uses_brand_prefix(self):
        assert build_dialog_id(CHAT_ID, BRAND) == "capital_mars_79990000000@c.us"

    def test_creates_dialog_in_initial_state(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        db.commit()

        assert dialog.dialog_id == build_dialog_id(CHAT_ID, BRAND)
        assert dialog.current_state == "initial"
        assert dialog.summary is None
        assert dialog.dialog_metadata == {}

    def test_second_call_returns_same_row(self, db):
        first = get_or_create_dialog(db, CHAT_ID, BRAND)
        second = get_or_create_dialog(db, CHAT_ID, BRAND)
        db.commit()

        assert first is second
        assert db.query(Dialog).count() == 1

    def test_concurrent_callers_create_one_row(self, session_factory):
        def create():
            session = session_factory()
            try:
                dialog = get_or_create_dialog(session, CHAT_ID, BRAND)
                dialog_id = dialog.dialog_id
                session.commit()
                return dialog_id
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(lambda _: create(), range(16)))

        assert set(ids) == {build_dialog_id(CHAT_ID, BRAND)}
        check = session_factory()
        try:
            assert check.query(Dialog).filter(Dialog.client_id == CHAT_ID).count() == 1
        finally:
            check.close()

    def test_find_dialog_does_not_create(self, db):
        assert find_dialog(db, CHAT_ID, BRAND) is None
        assert db.query(Dialog).count() == 0


class TestDialogState:
    def test_update_state_follows_transitions(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        update_dialog_state(db, dialog, DialogState.ACTIVE)
        update_dialog_state(db, dialog, DialogState.COMPLETED)
        assert dialog.current_state == "completed"

    def test_invalid_transition_raises(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        dialog.current_state = "bogus"
        with pytest.raises(ValueError):
            update_dialog_state(db, dialog, DialogState.ACTIVE)

    def test_reset_clears_summary_and_provider_id(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        update_dialog_state(db, dialog, DialogState.ACTIVE)
        dialog.summary = "Клиент сдаёт квартиру"
        dialog.provider_conversation_id = "resp_123"

        reset_dialog(db, dialog)

        assert dialog.current_state == "initial"
        assert dialog.summary is None
        assert dialog.provider_conversation_id is None


class TestMessages:
    def test_recent_messages_oldest_first(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        for i in range(5):
            append_message(db, dialog.dialog_id, "user" if i % 2 == 0 else "assistant", f"m{i}")
        db.commit()

        assert [m.content for m in recent_messages(db, dialog.dialog_id)] == ["m0", "m1", "m2", "m3", "m4"]

    def test_recent_messages_limit_keeps_newest(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        for i in range(5):
            append_message(db, dialog.dialog_id, "user", f"m{i}")
        db.commit()

        assert [m.content for m in recent_messages(db, dialog.dialog_id, limit=2)] == ["m3", "m4"]

    def test_token_defaults(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        message = append_message(db, dialog.dialog_id, "user", "Здравствуйте")
        assert message.tokens_in == 0
        assert message.tokens_out == 0
        assert message.meta == {}

    def test_count_by_role(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        append_message(db, dialog.dialog_id, "assistant", "Добрый день!")
        append_message(db, dialog.dialog_id, "user", "Да")
        append_message(db, dialog.dialog_id, "user", "Сдаю")

        assert count_messages(db, dialog.dialog_id) == 3
        assert count_messages(db, dialog.dialog_id, role="user") == 2

    def test_user_messages_without_facts(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        with_fact = append_message(db, dialog.dialog_id, "user", "Цена 50000")
        without_fact = append_message(db, dialog.dialog_id, "user", "Да")
        append_message(db, dialog.dialog_id, "assistant", "Спасибо")
        upsert_fact(db, dialog.dialog_id, "price", "50000", 0.9, with_fact.id)

        pending = user_messages_without_facts(db, dialog.dialog_id)

        assert [m.id for m in pending] == [without_fact.id]


class TestFactUpsert:
    def _facts(self, db, dialog_id):
        db.expire_all()
        return db.query(Fact).filter(Fact.dialog_id == dialog_id).all()

    def test_same_fact_twice_keeps_one_row(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        upsert_fact(db, dialog.dialog_id, "price", "50000", 0.9)
        upsert_fact(db, dialog.dialog_id, "price", "50000", 0.9)
        db.commit()

        facts = self._facts(db, dialog.dialog_id)
        assert len(facts) == 1
        assert facts[0].confidence == pytest.approx(0.9)

    def test_lower_confidence_does_not_overwrite(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        upsert_fact(db, dialog.dialog_id, "price", "50000", 0.9)
        written = upsert_fact(db, dialog.dialog_id, "price", "40000", 0.5)
        db.commit()

        facts = self._facts(db, dialog.dialog_id)
        assert written is False
        assert facts[0].value == "50000"
        assert facts[0].confidence == pytest.approx(0.9)

    def test_equal_confidence_prefers_new_value(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        upsert_fact(db, dialog.dialog_id, "rooms", "2", 0.8)
        written = upsert_fact(db, dialog.dialog_id, "rooms", "3", 0.8)
        db.commit()

        assert written is True
        assert self._facts(db, dialog.dialog_id)[0].value == "3"

    def test_higher_confidence_overwrites(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        upsert_fact(db, dialog.dialog_id, "floor", "5", 0.4)
        upsert_fact(db, dialog.dialog_id, "floor", "6", 0.95)
        db.commit()

        assert self._facts(db, dialog.dialog_id)[0].value == "6"

    @pytest.mark.parametrize(
        "raw,expected",
        [(1.7, 1.0), (-0.3, 0.0), ("0.456", 0.46), (None, 1.0), ("abc", 1.0)],
    )
    def test_clamp_confidence(self, raw, expected):
        assert clamp_confidence(raw) == expected


class TestDeleteHistory:
    def test_deletes_messages_and_facts_keeps_dialog(self, db):
        dialog = get_or_create_dialog(db, CHAT_ID, BRAND)
        message = append_message(db, dialog.dialog_id, "user", "Цена 50000")
        append_message(db, dialog.dialog_id, "assistant", "Спасибо")
        upsert_fact(db, dialog.dialog_id, "price", "50000", 0.9, message.id)
        db.commit()

        assert delete_history(db, dialog.dialog_id) == (2, 1)
        db.commit()

        assert recent_messages(db, dialog.dialog_id) == []
        assert db.query(Dialog).count() == 1


class TestSessions:
    def test_get_or_create_session_starts_running(self, db):
        session = get_or_create_session(db, CHAT_ID, "whatsapp", object_id=42)
        db.commit()

        assert session.status == "running"
        assert session.object_id == 42
        assert session.dialog_state == {"state": "initial"}
        assert session.started_at is not None

    def test_one_session_per_chat_and_platform(self, db):
        get_or_create_session(db, CHAT_ID, "whatsapp", object_id=42)
        get_or_create_session(db, CHAT_ID, "whatsapp", object_id=43)
        get_or_create_session(db, CHAT_ID, "telegram")
        db.commit()

        assert db.query(BotSession).filter(BotSession.platform == "whatsapp").count() == 1
        assert db.query(BotSession).count() == 2

    def test_stop_session(self, db):
        session = get_or_create_session(db, CHAT_ID, "whatsapp")
        assert stop_session(db, session) is True
        assert stop_session(db, session) is False
        assert session.stopped_at is not None
        assert get_running_session(db, CHAT_ID, "whatsapp") is None
        assert list_running_sessions(db) == []
