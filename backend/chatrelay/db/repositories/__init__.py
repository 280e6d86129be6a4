"""Database repositories for data access."""

from chatrelay.db.repositories.api_key import (
    create_api_key,
    find_least_recently_used_key,
    get_api_key,
    get_enabled_api_key,
    least_recently_used_key_stmt,
    touch_api_key,
)
from chatrelay.db.repositories.chat_model import (
    create_chat_model,
    get_chat_model_by_value,
)
from chatrelay.db.repositories.conversation import (
    add_history_record,
    create_conversation,
    delete_conversation,
    get_conversation,
    get_conversation_for_update,
    get_history_records,
    get_or_create_conversation,
)

__all__ = [
    # API keys
    "create_api_key",
    "find_least_recently_used_key",
    "get_api_key",
    "get_enabled_api_key",
    "least_recently_used_key_stmt",
    "touch_api_key",
    # Chat models
    "create_chat_model",
    "get_chat_model_by_value",
    # Conversations
    "add_history_record",
    "create_conversation",
    "delete_conversation",
    "get_conversation",
    "get_conversation_for_update",
    "get_history_records",
    "get_or_create_conversation",
]
