from unittest.mock import Mock

from app.services.reply_service import convert_markdown_to_whatsapp, render_template, send_with_delay


class TestConvertMarkdown:
    def test_bold_becomes_single_asterisk(self):
        assert convert_markdown_to_whatsapp("Это **важно**") == "Это *важно*"

    def test_italic_becomes_underscore(self):
        assert convert_markdown_to_whatsapp("Это *курсив*") == "Это _курсив_"

    def test_bold_and_italic_together(self):
        text = "**Цена** и *комиссия*"

        assert convert_markdown_to_whatsapp(text) == "*Цена* и _комиссия_"

    def test_strike_and_mono(self):
        assert convert_markdown_to_whatsapp("~~старая~~ `код`") == "~старая~ ```код```"

    def test_lists_are_untouched(self):
        text = "* пункт один\n* пункт два"

        assert convert_markdown_to_whatsapp(text) == text

    def test_empty(self):
        assert convert_markdown_to_whatsapp(None) == ""
        assert convert_markdown_to_whatsapp("") == ""


class TestRenderTemplate:
    def test_substitutes_known_placeholders(self):
        rendered = render_template("{greeting}, {owner_name_clean}!", {"greeting": "Добрый день", "owner_name_clean": "Иван"})

        assert rendered == "Добрый день, Иван!"

    def test_none_renders_empty_and_unknown_kept(self):
        rendered = render_template("{a}|{b}|{c}", {"a": None, "b": 5})

        assert rendered == "|5|{c}"

    def test_empty_template(self):
        assert render_template(None, {"a": 1}) == ""


class TestSendWithDelay:
    def test_sleeps_then_sends(self):
        sender = Mock()
        sleep = Mock()

        assert send_with_delay(sender, "7999@c.us", "Привет", delay_ms=1200, sleep_func=sleep) is True
        sleep.assert_called_once_with(1.2)
        sender.send_message.assert_called_once_with("7999@c.us", "Привет")

    def test_no_delay_skips_sleep(self):
        sender = Mock()
        sleep = Mock()

        send_with_delay(sender, "7999@c.us", "Привет", delay_ms=0, sleep_func=sleep)

        sleep.assert_not_called()

    def test_send_failure_returns_false(self):
        sender = Mock()
        sender.send_message.side_effect = RuntimeError("gateway down")

        assert send_with_delay(sender, "7999@c.us", "Привет", sleep_func=Mock()) is False
