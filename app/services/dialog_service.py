"""Dialog lifecycle: initialize, inbound handling, buffered replies, finalize, clear, stop."""

import asyncio
import time
from contextlib import contextmanager
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.database import utcnow
from app.logging_config import get_chat_logger
from app.models import BotConfig
from app.services import result as codes
from app.services.buffer_service import MessageBufferScheduler
from app.services.context_service import RemoteContextProvider
from app.services.conversation_service import (
    count_facts,
    delete_history,
    find_dialog,
    get_or_create_dialog,
    list_facts,
    merge_dialog_metadata,
    reset_dialog,
    update_dialog_state,
)
from app.services.fact_service import extract_facts
from app.services.llm import LLMProvider
from app.services.message_service import (
    append_message,
    count_messages,
    recent_messages,
    user_messages_without_facts,
)
from app.services.owner_name_service import extract_owner_name_with_ai
from app.services.reply_service import (
    MessageSender,
    convert_markdown_to_whatsapp,
    render_template,
    send_with_delay,
)
from app.services.result import Result
from app.services.session_service import (
    find_session,
    get_or_create_session,
    get_running_session,
    list_running_sessions,
    merge_session_metadata,
    set_dialog_state,
    start_session,
    stop_session,
)
from app.services.state_machine import DialogState
from app.services.summary_service import generate_summary

DEFAULT_SYSTEM_PROMPT = "Ты - профессионал ИИ-ассистент компании Capital Mars. Отвечай кратко, по делу."
DEFAULT_REPLY_MODEL = "gpt-4o"
DEFAULT_SERVICE_TIER = "flex"

FALLBACK_KICKOFF_TEMPLATE = (
    "{greeting} Мы ранее работали по вашей квартире на {address}. Подскажите, вы снова её сдаёте?"
)

# Sent by the client app when it failed to deliver the user's message
RESEND_CONTROL_TOKEN = "{{SWE001}}"
RESEND_NOTICE = "Пожалуйста, отправьте сообщение еще раз, я не смог увидеть ваш ответ"


def build_template_variables(context: dict, clean_owner_name: str) -> dict:
    deal_count = int(context.get("deal_count") or 0)
    if deal_count == 0:
        rental_phrase = "работали с вами по квартире на"
    else:
        rental_phrase = f"{context.get('objectCountWithSuffix') or deal_count} сдавали вашу квартиру на"

    greeting = f"{clean_owner_name}, добрый день!" if clean_owner_name else "Добрый день!"
    return {
        "greeting": greeting,
        "owner_name_clean": clean_owner_name,
        "ownernameclean": clean_owner_name,
        "formattedAddDate": context.get("formattedAddDate", ""),
        "objectCount": context.get("objectCount", ""),
        "address": context.get("address", ""),
        "price": context.get("price", ""),
        "formattedPrice": context.get("formatted_price", ""),
        "rental_phrase": rental_phrase,
    }


def build_session_metadata(
    object_id: int,
    context: dict,
    raw_owner_name: str,
    clean_owner_name: str,
    bot_config_id: Optional[int],
    platform: str,
) -> dict:
    return {
        "object_id": object_id,
        "owner_name_raw": raw_owner_name,
        "owner_name_clean": clean_owner_name,
        "address": context.get("address", ""),
        "object_count": context.get("objectCount", ""),
        "add_date": context.get("formattedAddDate", ""),
        "price": context.get("price", ""),
        "formatted_price": context.get("formatted_price", ""),
        "commission_client": context.get("commission_client", ""),
        "phone": context.get("phone", ""),
        "email": context.get("email", ""),
        "initialized_at": utcnow().isoformat(),
        "bot_config_id": bot_config_id,
        "platform": platform,
    }


def build_system_prompt(prompt: Optional[str], metadata: Optional[dict]) -> str:
    """Bot prompt plus the object context block from session metadata."""
    system_prompt = prompt or DEFAULT_SYSTEM_PROMPT
    if not metadata:
        return system_prompt

    lines = ["", "", "=== КОНТЕКСТ ОБЪЕКТА ==="]
    clean_name = metadata.get("owner_name_clean")
    raw_name = metadata.get("owner_name_raw")
    if clean_name:
        lines.append(f"Имя клиента: {clean_name}")
        lines.append(f"ВАЖНО: Используй это имя для обращения к клиенту (например: '{clean_name}, ...').")
    elif raw_name:
        lines.append(f'Имя клиента в БД (сырое): "{raw_name}"')
        lines.append("ВАЖНО: Извлеки из этой строки чистое имя по правилам из промпта и используй его для обращения.")
    else:
        lines.append("Имя клиента: не указано, используй нейтральное обращение без имени")

    if metadata.get("address"):
        lines.append(f"Адрес: {metadata['address']}")
    if metadata.get("price"):
        lines.append(f"Цена аренды: {metadata['price']} руб/мес")
    if metadata.get("formatted_price"):
        lines.append(f"Цена (форматированная): {metadata['formatted_price']} руб/мес")
    if metadata.get("commission_client"):
        lines.append(f"Комиссия клиента: {metadata['commission_client']}")
    lines.append("=== КОНЕЦ КОНТЕКСТА ===")
    return system_prompt + "\n".join(lines) + "\n"


class DialogService:
    """Facade over the conversation store, debounce buffer, facts and summaries.

    Every public operation opens its own DB session from session_factory.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        llm: LLMProvider,
        sender: MessageSender,
        context_provider: RemoteContextProvider,
        *,
        scheduler: Optional[MessageBufferScheduler] = None,
        settings: Settings = default_settings,
        sleep_func=time.sleep,
    ):
        self.session_factory = session_factory
        self.llm = llm
        self.sender = sender
        self.context_provider = context_provider
        self.scheduler = scheduler
        self.settings = settings
        self.sleep_func = sleep_func

    @property
    def brand(self) -> str:
        return self.settings.dialog_brand

    @property
    def platform(self) -> str:
        return self.settings.bot_platform

    def bind_scheduler(self, scheduler: MessageBufferScheduler) -> None:
        self.scheduler = scheduler
        scheduler.handler = self.drain

    @contextmanager
    def _session_scope(self):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _resolve_config(self, db: Session, bot_config_id: Optional[int]) -> Optional[BotConfig]:
        config = db.get(BotConfig, bot_config_id) if bot_config_id else None
        if config is None:
            config = (
                db.query(BotConfig)
                .filter(BotConfig.platform == self.platform)
                .order_by(BotConfig.id.desc())
                .first()
            )
        return config

    # initialize

    def initialize(self, chat_id: str, object_id: int, bot_config_id: Optional[int] = None) -> Result[dict]:
        log = get_chat_logger("dialog_service", chat_id)
        log.info("Initializing dialog", context={"object_id": object_id, "bot_config_id": bot_config_id})

        with self._session_scope() as db:
            config = self._resolve_config(db, bot_config_id)
            config_id = config.id if config else None
            session = get_or_create_session(
                db, chat_id, self.platform, object_id=object_id, bot_config_id=config_id
            )
            dialog = get_or_create_dialog(db, chat_id, self.brand)

            context = self.context_provider.get_context(object_id)
            if context is None:
                log.error("Object context not found, initialization aborted", context={"object_id": object_id})
                return Result.failure(f"Context not found for object {object_id}", codes.CONTEXT_NOT_FOUND)

            raw_owner_name = str(context.get("owner_name") or "")
            clean_owner_name = extract_owner_name_with_ai(raw_owner_name, self.llm)
            variables = build_template_variables(context, clean_owner_name)
            metadata = build_session_metadata(
                object_id, context, raw_owner_name, clean_owner_name, config_id, self.platform
            )

            session.object_id = object_id
            session.bot_config_id = config_id
            start_session(session)
            set_dialog_state(session, DialogState.ACTIVE)
            session.session_metadata = metadata
            update_dialog_state(db, dialog, DialogState.ACTIVE)
            dialog.dialog_metadata = metadata
            db.flush()

            existing = count_messages(db, dialog.dialog_id)
            kickoff_sent = False
            if existing == 0:
                kickoff_sent = self._send_kickoff(db, chat_id, dialog.dialog_id, config, variables)
            else:
                log.info("Dialog has history, kickoff skipped", context={"existing_messages": existing})

            return Result.success(
                {
                    "chat_id": chat_id,
                    "dialog_id": dialog.dialog_id,
                    "session_id": session.id,
                    "bot_config_id": config_id,
                    "kickoff_sent": kickoff_sent,
                }
            )

    def _send_kickoff(
        self,
        db: Session,
        chat_id: str,
        dialog_id: str,
        config: Optional[BotConfig],
        variables: dict,
    ) -> bool:
        log = get_chat_logger("dialog_service", chat_id, dialog_id=dialog_id)
        template = config.kickoff_message if config else None
        text = convert_markdown_to_whatsapp(render_template(template, variables))
        if not text.strip():
            log.warning("Kickoff template empty after rendering, using fallback")
            text = convert_markdown_to_whatsapp(render_template(FALLBACK_KICKOFF_TEMPLATE, variables))

        delivered = send_with_delay(self.sender, chat_id, text, 0, self.sleep_func)
        append_message(db, dialog_id, "assistant", text, meta={"kickoff": True, "delivered": delivered})
        log.info("Kickoff message sent", context={"delivered": delivered, "length": len(text)})
        return delivered

    # inbound

    async def handle_incoming(self, chat_id: str, text: str, meta: Optional[dict] = None) -> Result[int]:
        """Persist the user message, extract facts, then buffer it for a reply.

        Precondition failures come back as Result failures; unexpected errors
        propagate so the delivery is not marked processed.
        """
        result = await asyncio.to_thread(self._record_incoming, chat_id, text, meta or {})
        if not result.ok:
            return result
        if self.scheduler is None:
            get_chat_logger("dialog_service", chat_id).warning("No buffer scheduler bound, reply skipped")
            return result
        await self.scheduler.enqueue(chat_id, result.value)
        return result

    def _record_incoming(self, chat_id: str, text: str, meta: dict) -> Result[int]:
        log = get_chat_logger("dialog_service", chat_id)
        with self._session_scope() as db:
            session = get_running_session(db, chat_id, self.platform)
            if session is None:
                log.info("No running session, inbound message dropped")
                return Result.failure("No running session", codes.NO_RUNNING_SESSION)

            dialog = get_or_create_dialog(db, chat_id, self.brand)

            if text.strip() == RESEND_CONTROL_TOKEN:
                delivered = send_with_delay(self.sender, chat_id, RESEND_NOTICE, 0, self.sleep_func)
                append_message(
                    db,
                    dialog.dialog_id,
                    "assistant",
                    RESEND_NOTICE,
                    meta={"control_token": RESEND_CONTROL_TOKEN, "delivered": delivered},
                )
                log.info("Resend notice sent", context={"delivered": delivered})
                return Result.failure("Client asked to resend", codes.RESEND_REQUESTED)

            message_meta = {k: v for k, v in meta.items() if k != "raw"}
            message = append_message(db, dialog.dialog_id, "user", text, meta=message_meta)
            message_id = message.id
            dialog_id = dialog.dialog_id
            db.commit()

            extract_facts(db, dialog_id, message, self.llm)
            return Result.success(message_id)

    # buffered reply

    async def drain(self, chat_id: str, message_refs: list[str]) -> None:
        await asyncio.to_thread(self.process_buffered_messages, chat_id, message_refs)

    def process_buffered_messages(self, chat_id: str, message_refs: list[str]) -> Optional[str]:
        """Answer a drained burst. Returns the reply text, or None when no reply was produced."""
        log = get_chat_logger("dialog_service", chat_id)
        with self._session_scope() as db:
            session = get_running_session(db, chat_id, self.platform)
            if session is None:
                log.warning("Session not running, buffered messages skipped", context={"refs": message_refs})
                return None

            dialog = get_or_create_dialog(db, chat_id, self.brand)
            config = db.get(BotConfig, session.bot_config_id) if session.bot_config_id else None

            system_prompt = build_system_prompt(config.prompt if config else None, session.session_metadata)
            model = (config.openai_model if config else None) or DEFAULT_REPLY_MODEL
            service_tier = (config.openai_service_tier if config else None) or DEFAULT_SERVICE_TIER
            max_tokens = config.max_tokens if config else None
            vector_store_ids = config.vector_store_ids if config else []
            history = [
                {"role": m.role, "content": m.content}
                for m in recent_messages(db, dialog.dialog_id, self.settings.history_limit)
            ]

            started = time.monotonic()
            try:
                if vector_store_ids:
                    response = self.llm.chat_with_rag(
                        system_prompt,
                        history,
                        vector_store_ids,
                        max_tokens=max_tokens,
                        model=model,
                        service_tier=service_tier,
                    )
                else:
                    response = self.llm.chat(system_prompt, history, max_tokens=max_tokens, model=model)
            except Exception as exc:
                log.error("LLM call failed, reply for this cycle is lost", context={"error": str(exc)})
                return None

            log.info(
                "LLM reply received",
                context={
                    "elapsed_ms": round((time.monotonic() - started) * 1000),
                    "model": model,
                    "using_rag": bool(vector_store_ids),
                    "buffered_messages": len(message_refs),
                    "usage": response.usage,
                },
            )

            reply = (response.content or "").strip()
            if not reply:
                log.warning("LLM returned empty reply, nothing sent")
                return None

            delivered = send_with_delay(
                self.sender,
                chat_id,
                convert_markdown_to_whatsapp(reply),
                self.settings.reply_delay_ms,
                self.sleep_func,
            )
            append_message(
                db,
                dialog.dialog_id,
                "assistant",
                reply,
                previous_response_id=response.response_id,
                tokens_in=response.prompt_tokens,
                tokens_out=response.completion_tokens,
                meta={"buffered_message_ids": message_refs, "delivered": delivered},
            )
            if response.response_id:
                dialog.provider_conversation_id = response.response_id
            db.flush()

            total = count_messages(db, dialog.dialog_id)
            if self.settings.summary_every and total % self.settings.summary_every == 0:
                generate_summary(db, dialog, self.llm)
            return reply

    # finalize / clear / stop

    def finalize(self, chat_id: str) -> Result[dict]:
        """Backfill facts, force a summary and mark the dialog completed. Never raises."""
        log = get_chat_logger("dialog_service", chat_id)
        try:
            with self._session_scope() as db:
                dialog = find_dialog(db, chat_id, self.brand)
                if dialog is None:
                    log.warning("Dialog not found, nothing to finalize")
                    return Result.failure("Dialog not found", codes.DIALOG_NOT_FOUND)

                dialog_id = dialog.dialog_id
                for message in user_messages_without_facts(db, dialog_id):
                    extract_facts(db, dialog_id, message, self.llm)
                    db.commit()

                user_messages = count_messages(db, dialog_id, role="user")
                if user_messages:
                    generate_summary(db, dialog, self.llm, force=True)

                update_dialog_state(db, dialog, DialogState.COMPLETED)
                stats = {
                    "finalized_at": utcnow().isoformat(),
                    "total_messages": count_messages(db, dialog_id),
                    "user_messages": user_messages,
                    "total_facts": count_facts(db, dialog_id),
                    "has_summary": bool(dialog.summary),
                }
                merge_dialog_metadata(dialog, stats)
                session = find_session(db, chat_id, self.platform)
                if session is not None:
                    merge_session_metadata(session, stats)

            log.info("Dialog finalized", context=stats)
            return Result.success(stats)
        except Exception as exc:
            log.error("Dialog finalization failed", context={"error": str(exc)}, exc_info=True)
            return Result.failure(str(exc), codes.FINALIZE_ERROR)

    async def clear(self, chat_id: str) -> Result[dict]:
        """Forget the conversation: delete history and facts, reset state, purge the buffer.

        Failures are logged and re-raised.
        """
        log = get_chat_logger("dialog_service", chat_id)
        try:
            if self.scheduler is not None:
                await self.scheduler.purge(chat_id)
            stats = await asyncio.to_thread(self._clear_history, chat_id)
        except Exception as exc:
            log.error("Dialog clear failed", context={"error": str(exc)}, exc_info=True)
            raise
        log.info("Dialog cleared", context=stats)
        return Result.success(stats)

    def _clear_history(self, chat_id: str) -> dict:
        with self._session_scope() as db:
            dialog = get_or_create_dialog(db, chat_id, self.brand)
            messages_deleted, facts_deleted = delete_history(db, dialog.dialog_id)
            reset_dialog(db, dialog)
            session = find_session(db, chat_id, self.platform)
            if session is not None:
                set_dialog_state(session, DialogState.INITIAL)
            return {"messages_deleted": messages_deleted, "facts_deleted": facts_deleted}

    def stop(self, chat_id: str) -> Result[dict]:
        """Stop the running session and finalize its dialog. Stopping twice is a no-op."""
        with self._session_scope() as db:
            session = get_running_session(db, chat_id, self.platform)
            stopped = session is not None and stop_session(db, session)

        if not stopped:
            return Result.success({"chat_id": chat_id, "stopped": False})
        finalized = self.finalize(chat_id)
        return Result.success({"chat_id": chat_id, "stopped": True, "finalize": finalized.to_dict()})

    def stop_all(self) -> int:
        """Stop and finalize every running session. Returns how many were stopped."""
        with self._session_scope() as db:
            chat_ids = [s.chat_id for s in list_running_sessions(db, self.platform)]

        stopped = 0
        for chat_id in chat_ids:
            try:
                result = self.stop(chat_id)
            except Exception as exc:
                get_chat_logger("dialog_service", chat_id).error(
                    "Failed to stop session", context={"error": str(exc)}, exc_info=True
                )
                continue
            if result.ok and result.value.get("stopped"):
                stopped += 1
        return stopped

    def describe(self, chat_id: str) -> Optional[dict[str, Any]]:
        with self._session_scope() as db:
            session = find_session(db, chat_id, self.platform)
            dialog = find_dialog(db, chat_id, self.brand)
            if session is None and dialog is None:
                return None
            info: dict[str, Any] = {"chat_id": chat_id}
            if session is not None:
                info.update(
                    status=session.status,
                    dialog_state=(session.dialog_state or {}).get("state"),
                    object_id=session.object_id,
                    bot_config_id=session.bot_config_id,
                    metadata=session.session_metadata or {},
                )
            if dialog is not None:
                info.update(
                    dialog_id=dialog.dialog_id,
                    current_state=dialog.current_state,
                    summary=dialog.summary,
                    messages=count_messages(db, dialog.dialog_id),
                    facts={fact.key: fact.value for fact in list_facts(db, dialog.dialog_id)},
                )
            return info
