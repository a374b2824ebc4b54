from unittest.mock import Mock, patch

import httpx
import pytest

from app.services.greenapi_service import GreenApiError, GreenApiService


def make_response(status_code=200, data=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.content = b"{}" if data is not None else b""
    response.json.return_value = data
    return response


@pytest.fixture
def http_client():
    with patch("app.services.greenapi_service.httpx.Client") as client_cls:
        yield client_cls.return_value.__enter__.return_value


@pytest.fixture
def service():
    return GreenApiService(
        api_url="https://api.example.test/",
        id_instance="1101000001",
        api_token="token",
        max_attempts=3,
        backoff_seconds=1,
        sleep_func=Mock(),
    )


class TestSendMessage:
    def test_posts_to_method_url(self, http_client, service):
        http_client.request.return_value = make_response(data={"idMessage": "BAE5"})

        result = service.send_message("79990000000@c.us", "Привет")

        assert result == {"idMessage": "BAE5"}
        http_client.request.assert_called_once_with(
            "POST",
            "https://api.example.test/waInstance1101000001/sendMessage/token",
            json={"chatId": "79990000000@c.us", "message": "Привет"},
            params=None,
        )

    def test_retries_server_errors_with_backoff(self, http_client, service):
        http_client.request.side_effect = [
            make_response(500, text="err"),
            httpx.ReadTimeout("timeout"),
            make_response(data={"idMessage": "BAE5"}),
        ]

        assert service.send_message("79990000000@c.us", "Привет") == {"idMessage": "BAE5"}
        assert [c.args[0] for c in service.sleep_func.call_args_list] == [1, 2]

    def test_client_error_is_not_retried(self, http_client, service):
        http_client.request.return_value = make_response(400, text="bad chatId")

        with pytest.raises(GreenApiError) as exc_info:
            service.send_message("bad", "Привет")

        assert exc_info.value.status_code == 400
        assert http_client.request.call_count == 1

    def test_exhausted_retries_raise(self, http_client, service):
        http_client.request.return_value = make_response(502, text="bad gateway")

        with pytest.raises(GreenApiError):
            service.send_message("79990000000@c.us", "Привет")

        assert http_client.request.call_count == 3


class TestPolling:
    def test_last_incoming_messages(self, http_client, service):
        http_client.request.return_value = make_response(data=[{"idMessage": "1"}])

        assert service.get_last_incoming_messages(minutes=5) == [{"idMessage": "1"}]
        _, kwargs = http_client.request.call_args
        assert kwargs["params"] == {"minutes": 5}

    def test_last_incoming_messages_non_list(self, http_client, service):
        http_client.request.return_value = make_response(data={"unexpected": True})

        assert service.get_last_incoming_messages() == []

    def test_empty_notification_queue(self, http_client, service):
        http_client.request.return_value = make_response(data=None)

        assert service.receive_notification() is None

    def test_delete_notification_uses_receipt_suffix(self, http_client, service):
        http_client.request.return_value = make_response(data={"result": True})

        assert service.delete_notification(42) is True
        args, _ = http_client.request.call_args
        assert args == ("DELETE", "https://api.example.test/waInstance1101000001/deleteNotification/token/42")
