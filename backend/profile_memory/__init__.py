from .database import SQLiteProfileDB
from .input_guard import ConversationGuard, ConversationInputError, GuardResult
from .service import ProfileMemoryService, SessionNotFound

__all__ = [
    "SQLiteProfileDB",
    "ConversationGuard",
    "ConversationInputError",
    "GuardResult",
    "ProfileMemoryService",
    "SessionNotFound",
]
