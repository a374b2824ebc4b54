from unittest.mock import Mock

from app.services.conversation_service import get_or_create_dialog, list_facts
from app.services.fact_service import (
    FACT_KEYS,
    build_fact_prompt,
    extract_facts,
    parse_facts_response,
)
from app.services.llm import LLMProviderError, LLMResponse
from app.services.message_service import append_message


def llm_returning(content: str) -> Mock:
    llm = Mock()
    llm.chat.return_value = LLMResponse(content=content, model="gpt-4o-mini")
    return llm


class TestParseFactsResponse:
    def test_plain_array(self):
        facts = parse_facts_response('[{"key": "price", "value": "5 млн", "confidence": 0.9}]')

        assert facts == [{"key": "price", "value": "5 млн", "confidence": 0.9}]

    def test_fenced_array(self):
        content = '```json\n[{"key": "rooms", "value": 3, "confidence": 1}]\n```'

        assert parse_facts_response(content) == [{"key": "rooms", "value": "3", "confidence": 1.0}]

    def test_malformed_output_is_empty(self):
        assert parse_facts_response("Фактов нет") == []
        assert parse_facts_response("") == []
        assert parse_facts_response('{"key": "price", "value": "1"}') == []

    def test_items_without_key_or_value_are_skipped(self):
        content = '[{"key": "price"}, {"value": "x"}, "junk", {"key": "floor", "value": "5"}]'

        assert parse_facts_response(content) == [{"key": "floor", "value": "5", "confidence": 1.0}]

    def test_confidence_is_clamped(self):
        content = (
            '[{"key": "price", "value": "1", "confidence": 7},'
            ' {"key": "area", "value": "40", "confidence": -1},'
            ' {"key": "floor", "value": "2", "confidence": "high"}]'
        )

        assert [f["confidence"] for f in parse_facts_response(content)] == [1.0, 0.0, 1.0]


class TestBuildFactPrompt:
    def test_lists_every_key_and_message(self):
        prompt = build_fact_prompt("Квартира на 5 этаже")

        for key in FACT_KEYS:
            assert f'"{key}"' in prompt
        assert "Квартира на 5 этаже" in prompt


class TestExtractFacts:
    def test_writes_facts_for_user_message(self, db):
        dialog = get_or_create_dialog(db, "79990000000@c.us", "capital_mars")
        message = append_message(db, dialog.dialog_id, "user", "Цена 5 млн, 2 комнаты")
        llm = llm_returning(
            '[{"key": "price", "value": "5 млн", "confidence": 0.9},'
            ' {"key": "rooms", "value": "2", "confidence": 0.95}]'
        )

        saved = extract_facts(db, dialog.dialog_id, message, llm)

        assert saved == 2
        facts = {f.key: f for f in list_facts(db, dialog.dialog_id)}
        assert facts["price"].value == "5 млн"
        assert facts["rooms"].source_message_id == message.id
        _, kwargs = llm.chat.call_args
        assert kwargs["temperature"] == 0.0

    def test_assistant_message_is_ignored(self, db):
        dialog = get_or_create_dialog(db, "79990000000@c.us", "capital_mars")
        message = append_message(db, dialog.dialog_id, "assistant", "Здравствуйте!")
        llm = llm_returning("[]")

        assert extract_facts(db, dialog.dialog_id, message, llm) == 0
        llm.chat.assert_not_called()

    def test_llm_error_yields_zero(self, db):
        dialog = get_or_create_dialog(db, "79990000000@c.us", "capital_mars")
        message = append_message(db, dialog.dialog_id, "user", "Цена 5 млн")
        llm = Mock()
        llm.chat.side_effect = LLMProviderError("rate limited", status_code=429)

        assert extract_facts(db, dialog.dialog_id, message, llm) == 0
        assert list_facts(db, dialog.dialog_id) == []

    def test_lower_confidence_does_not_overwrite(self, db):
        dialog = get_or_create_dialog(db, "79990000000@c.us", "capital_mars")
        first = append_message(db, dialog.dialog_id, "user", "Цена 5 млн")
        second = append_message(db, dialog.dialog_id, "user", "Может 4 млн")

        extract_facts(db, dialog.dialog_id, first, llm_returning('[{"key": "price", "value": "5 млн", "confidence": 0.9}]'))
        saved = extract_facts(
            db, dialog.dialog_id, second, llm_returning('[{"key": "price", "value": "4 млн", "confidence": 0.5}]')
        )

        assert saved == 0
        db.expire_all()
        [fact] = list_facts(db, dialog.dialog_id)
        assert fact.value == "5 млн"
        assert fact.confidence == 0.9
