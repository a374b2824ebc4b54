import os
import time
from typing import Any, Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("greenapi_service")

GREENAPI_URL = os.environ.get("GREENAPI_URL", "https://1105.api.green-api.com")
GREENAPI_ID_INSTANCE = os.environ.get("GREENAPI_ID_INSTANCE", "")
GREENAPI_API_TOKEN = os.environ.get("GREENAPI_API_TOKEN", "")
GREENAPI_MAX_ATTEMPTS = int(os.environ.get("GREENAPI_MAX_ATTEMPTS", "3"))
GREENAPI_BACKOFF_SECONDS = float(os.environ.get("GREENAPI_BACKOFF_SECONDS", "1"))

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class GreenApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class GreenApiService:
    """Client for the GreenAPI WhatsApp gateway."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        id_instance: Optional[str] = None,
        api_token: Optional[str] = None,
        max_attempts: int = GREENAPI_MAX_ATTEMPTS,
        backoff_seconds: float = GREENAPI_BACKOFF_SECONDS,
        timeout: Optional[httpx.Timeout] = None,
        sleep_func=time.sleep,
    ):
        self.api_url = (api_url or GREENAPI_URL).rstrip("/")
        self.id_instance = id_instance or GREENAPI_ID_INSTANCE
        self.api_token = api_token or GREENAPI_API_TOKEN
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout or httpx.Timeout(30.0, connect=10.0)
        self.sleep_func = sleep_func

    def _method_url(self, method: str, suffix: str = "") -> str:
        url = f"{self.api_url}/waInstance{self.id_instance}/{method}/{self.api_token}"
        return f"{url}/{suffix}" if suffix else url

    def _request(
        self,
        http_method: str,
        method: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        suffix: str = "",
    ) -> Any:
        """Call a GreenAPI method, retrying transport errors and 5xx/429 with linear backoff."""
        url = self._method_url(method, suffix)
        last_error = ""
        status_code = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.request(http_method, url, json=json, params=params)
            except httpx.HTTPError as exc:
                last_error = str(exc)
                status_code = None
            else:
                status_code = response.status_code
                if 200 <= status_code < 300:
                    if not response.content:
                        return None
                    return response.json()
                last_error = response.text
                if status_code not in RETRYABLE_STATUS_CODES:
                    break

            if attempt < self.max_attempts:
                logger.warning(
                    "GreenAPI request failed, retrying",
                    extra={"context": {"method": method, "attempt": attempt, "status": status_code, "error": last_error}},
                )
                self.sleep_func(self.backoff_seconds * attempt)

        logger.error(
            "GreenAPI request failed",
            extra={"context": {"method": method, "status": status_code, "error": last_error}},
        )
        raise GreenApiError(f"GreenAPI {method} failed: {status_code} {last_error}", status_code=status_code)

    def send_message(self, chat_id: str, message: str) -> dict:
        """Send a text message. Returns the provider ack ({"idMessage": ...})."""
        result = self._request("POST", "sendMessage", json={"chatId": chat_id, "message": message})
        logger.info(
            "WhatsApp message sent",
            extra={"context": {"chat_id": chat_id, "id_message": (result or {}).get("idMessage")}},
        )
        return result or {}

    def get_last_incoming_messages(self, minutes: int = 1) -> list[dict]:
        result = self._request("GET", "lastIncomingMessages", params={"minutes": minutes})
        return result if isinstance(result, list) else []

    def receive_notification(self) -> Optional[dict]:
        """Next queued notification ({"receiptId", "body"}) or None when the queue is empty."""
        return self._request("GET", "receiveNotification")

    def delete_notification(self, receipt_id: int) -> bool:
        result = self._request("DELETE", "deleteNotification", suffix=str(receipt_id))
        return bool((result or {}).get("result"))
