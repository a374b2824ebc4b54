from app.services.conversation_service import (
    get_or_create_dialog,
    update_dialog_state,
    upsert_fact,
)
from app.services.message_service import (
    append_message,
    recent_messages,
)
from app.services.state_machine import (
    DialogState,
    InvalidTransitionError,
    SessionStatus,
    can_transition,
    transition,
)
