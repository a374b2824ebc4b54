"""Process-wide service instances, created lazily on first use."""

import os
from typing import Optional

from app.config import settings
from app.database import SessionLocal
from app.services.buffer_service import MessageBufferScheduler
from app.services.cache_store import CacheStore, build_cache_store
from app.services.context_service import RemoteContextProvider
from app.services.dialog_service import DialogService
from app.services.greenapi_service import GreenApiService
from app.services.inbound_service import InboundGate
from app.services.llm import OpenAIProvider

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_DEFAULT_MODEL = os.environ.get("OPENAI_DEFAULT_MODEL", "gpt-4o")

_llm_provider: Optional[OpenAIProvider] = None
_greenapi_service: Optional[GreenApiService] = None
_cache_store: Optional[CacheStore] = None
_dialog_service: Optional[DialogService] = None
_inbound_gate: Optional[InboundGate] = None


def get_llm_provider() -> OpenAIProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(
            api_key=OPENAI_API_KEY,
            default_model=OPENAI_DEFAULT_MODEL,
            base_url=OPENAI_BASE_URL,
        )
    return _llm_provider


def get_greenapi_service() -> GreenApiService:
    global _greenapi_service
    if _greenapi_service is None:
        _greenapi_service = GreenApiService()
    return _greenapi_service


def get_cache_store() -> CacheStore:
    global _cache_store
    if _cache_store is None:
        _cache_store = build_cache_store(settings.redis_url)
    return _cache_store


def get_dialog_service() -> DialogService:
    global _dialog_service
    if _dialog_service is None:
        service = DialogService(
            SessionLocal,
            get_llm_provider(),
            get_greenapi_service(),
            RemoteContextProvider(),
            settings=settings,
        )
        service.bind_scheduler(
            MessageBufferScheduler(
                get_cache_store(),
                delay_seconds=settings.debounce_seconds,
                buffer_ttl_seconds=settings.buffer_ttl_seconds,
            )
        )
        _dialog_service = service
    return _dialog_service


def get_inbound_gate() -> InboundGate:
    global _inbound_gate
    if _inbound_gate is None:
        _inbound_gate = InboundGate(get_cache_store(), ttl_seconds=settings.dedup_ttl_seconds)
    return _inbound_gate


async def shutdown_runtime() -> None:
    """Cancel pending drains. There is no graceful drain: buffered refs expire on their own."""
    if _dialog_service is not None and _dialog_service.scheduler is not None:
        await _dialog_service.scheduler.shutdown()
