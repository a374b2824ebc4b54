"""Object/owner context from the remote CRM database (MySQL), cached in Redis."""

import json
import os
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

import redis
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("context_service")

CONTEXT_CACHE_PREFIX = "outreach:context"
CONTEXT_CACHE_SOCKET_TIMEOUT_SECONDS = float(os.environ.get("CONTEXT_CACHE_SOCKET_TIMEOUT_SECONDS", "0.3"))

NUMBER_WORDS = {
    0: "ноль",
    1: "один",
    2: "два",
    3: "три",
    4: "четыре",
    5: "пять",
    6: "шесть",
    7: "семь",
    8: "восемь",
    9: "девять",
    10: "десять",
    11: "одиннадцать",
    12: "двенадцать",
    13: "тринадцать",
    14: "четырнадцать",
    15: "пятнадцать",
    16: "шестнадцать",
    17: "семнадцать",
    18: "восемнадцать",
    19: "девятнадцать",
    20: "двадцать",
}

# Prepositional case: "в Марте 2024 году"
MONTHS_PREPOSITIONAL = [
    "Январе",
    "Феврале",
    "Марте",
    "Апреле",
    "Мае",
    "Июне",
    "Июле",
    "Августе",
    "Сентябре",
    "Октябре",
    "Ноябре",
    "Декабре",
]

_remote_engine: Optional[Engine] = None
_context_cache_client = None
_context_cache_url = None


def number_word(count: int) -> str:
    return NUMBER_WORDS.get(count, str(count))


def times_suffix(count: int) -> str:
    if count % 10 in (2, 3, 4) and count % 100 not in (12, 13, 14):
        return "раза"
    return "раз"


def format_price(price: Any) -> str:
    if price in (None, ""):
        return ""
    try:
        return f"{int(round(float(price))):,}"
    except (TypeError, ValueError):
        return str(price)


def format_add_date(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, (date, datetime)):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            logger.warning("Unparseable advertisement date", extra={"context": {"value": str(value)}})
            return ""
    return f"в {MONTHS_PREPOSITIONAL[parsed.month - 1]} {parsed.year} году"


def get_remote_engine() -> Engine:
    global _remote_engine
    if _remote_engine is None:
        _remote_engine = create_engine(settings.remote_database_url, pool_pre_ping=True, pool_recycle=3600)
    return _remote_engine


def _get_context_cache_client():
    global _context_cache_client, _context_cache_url
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return None
    if not settings.redis_url:
        return None
    if _context_cache_client is None or _context_cache_url != settings.redis_url:
        _context_cache_url = settings.redis_url
        _context_cache_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=CONTEXT_CACHE_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=CONTEXT_CACHE_SOCKET_TIMEOUT_SECONDS,
        )
    return _context_cache_client


def _plain(value: Any) -> Any:
    # MySQL DECIMAL columns; the result is stored in JSON columns
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def build_context(owner_value, object_row: dict, deal_count: int, date_site) -> dict:
    """Flatten remote rows into the template/metadata variables."""
    word = number_word(deal_count)
    price = _plain(object_row.get("price"))
    return {
        "object_id": object_row.get("id"),
        "owner_name": owner_value or "",
        "address": object_row.get("address") or "",
        "price": price if price is not None else "",
        "formatted_price": format_price(price),
        "commission_client": _plain(object_row.get("commission_client")) or "",
        "deal_count": deal_count,
        "objectCount": word,
        "objectCountWithSuffix": f"{word} {times_suffix(deal_count)}",
        "formattedAddDate": format_add_date(date_site),
    }


class RemoteContextProvider:
    def __init__(self, engine: Optional[Engine] = None, cache_client=None, cache_ttl_seconds: Optional[int] = None):
        self._engine = engine
        self._cache_client = cache_client
        self.cache_ttl_seconds = cache_ttl_seconds or settings.context_cache_ttl_seconds

    @property
    def engine(self) -> Engine:
        return self._engine or get_remote_engine()

    def _cache(self):
        return self._cache_client or _get_context_cache_client()

    def _read_cache(self, object_id: int) -> Optional[dict]:
        cache = self._cache()
        if not cache:
            return None
        try:
            payload = cache.get(f"{CONTEXT_CACHE_PREFIX}:{object_id}")
        except Exception as exc:
            logger.warning(f"Context cache read failed: {exc}")
            return None
        if not payload:
            return None
        try:
            data = json.loads(payload)
        except ValueError as exc:
            logger.warning(f"Context cache decode failed: {exc}")
            return None
        return data if isinstance(data, dict) else None

    def _write_cache(self, object_id: int, context: dict) -> None:
        cache = self._cache()
        if not cache:
            return
        try:
            cache.set(
                f"{CONTEXT_CACHE_PREFIX}:{object_id}",
                json.dumps(context, ensure_ascii=False, default=str),
                ex=self.cache_ttl_seconds,
            )
        except Exception as exc:
            logger.warning(f"Context cache write failed: {exc}")

    def get_context(self, object_id: int) -> Optional[dict]:
        """Context variables for an object, or None when it cannot be resolved."""
        cached = self._read_cache(object_id)
        if cached is not None:
            return cached
        context = self.fetch(object_id)
        if context is not None:
            self._write_cache(object_id, context)
        return context

    def fetch(self, object_id: int) -> Optional[dict]:
        params = {"object_id": object_id}
        try:
            with self.engine.connect() as conn:
                owner = conn.execute(
                    text("SELECT value FROM object_owner_info WHERE object_id = :object_id LIMIT 1"), params
                ).mappings().first()
                if not owner:
                    logger.error("Owner info not found", extra={"context": params})
                    return None

                obj = conn.execute(
                    text(
                        "SELECT id, address, price, commission_client FROM objects "
                        "WHERE id = :object_id LIMIT 1"
                    ),
                    params,
                ).mappings().first()
                if not obj:
                    logger.error("Object not found", extra={"context": params})
                    return None

                deal_count = conn.execute(
                    text("SELECT COUNT(object_id) FROM deals WHERE object_id = :object_id"), params
                ).scalar() or 0

                last_ad = conn.execute(
                    text(
                        "SELECT date_site FROM info_on_site WHERE object_id = :object_id "
                        "ORDER BY date_site DESC LIMIT 1"
                    ),
                    params,
                ).mappings().first()
        except Exception as exc:
            logger.error(
                "Failed to fetch object context",
                extra={"context": {"object_id": object_id, "error": str(exc)}},
            )
            return None

        return build_context(
            owner["value"],
            dict(obj),
            int(deal_count),
            last_ad["date_site"] if last_ad else None,
        )
