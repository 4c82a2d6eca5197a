"""
Conversation Manager for the Dewey chat backend.

Keeps each user's conversations in memory, one ConversationController per
conversation, and evicts idle ones.
"""
from typing import Dict, List, Optional
import uuid
import time

from app.models import USER, Conversation
from app.rag.controller import ConversationController
from app.settings_store import ChatSettings
from app.logging_config import get_logger

logger = get_logger(__name__)

CLEANUP_THRESHOLD = 100


class ConversationManager:
    """
    Manages conversation state in-memory.

    Handles:
    - Conversation creation and retrieval (with ownership checks)
    - Per-conversation controllers (model connection, RAG, streaming)
    - Automatic cleanup of old conversations
    """

    def __init__(self, max_age_seconds: int = 3600, controller_options: Optional[Dict] = None):
        """Initialize conversation manager with max age for cleanup."""
        self.controllers: Dict[str, ConversationController] = {}
        self.max_age_seconds = max_age_seconds
        # Extra keyword arguments passed to every ConversationController
        self.controller_options = controller_options or {}


    @property
    def conversations(self) -> Dict[str, Conversation]:
        return {c_id: ctrl.conversation for c_id, ctrl in self.controllers.items()}


    async def create_conversation(
            self,
            user_id: str,
            settings: ChatSettings,
            conversation_id: Optional[str] = None
            ) -> ConversationController:
        """Create a new conversation and its controller. Optionally accept client-provided ID"""
        await self._run_cleanup_if_needed()

        c_id = conversation_id or str(uuid.uuid4())

        # Check if already exists
        if c_id in self.controllers:
            raise ValueError(f"Conversation {c_id} already exists")

        c = Conversation(conversation_id=c_id, user_id=user_id)
        controller = ConversationController(c, settings, **self.controller_options)
        self.controllers[c_id] = controller
        logger.info(f"Created conversation {c_id} for user {user_id}")
        return controller


    def get_controller(self, conversation_id: str, user_id: Optional[str] = None) -> Optional[ConversationController]:
        """Retrieve controller by conversation ID, updating last_accessed. Returns None if not found or unauthorized."""
        controller = self.controllers.get(conversation_id)
        if controller is None:
            return None

        # Ownership validation (if user_id provided)
        if user_id is not None and controller.conversation.user_id != user_id:
            return None

        controller.conversation.last_accessed = time.time()
        return controller


    def get_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Optional[Conversation]:
        controller = self.get_controller(conversation_id, user_id)
        return controller.conversation if controller else None


    def get_messages(self, conversation_id: str) -> List[dict]:
        """Get message history. Returns empty list if conversation not found."""
        controller = self.controllers.get(conversation_id)
        if controller is None:
            return []
        return [t.to_dict() for t in controller.conversation.turns]


    def get_conversation_summaries(self, user_id: str) -> List[dict]:
        """Get all conversation summaries for a specific user, sorted by most recent."""
        summaries = []
        for convo in self.conversations.values():
            if convo.user_id != user_id:
                continue

            first_message = next((t.content for t in convo.turns if t.role == USER), "")

            summaries.append({
                "conversation_id": convo.conversation_id,
                "first_message": first_message[:100],
                "message_count": len(convo.turns),
                "citation_count": len(convo.citations),
                "selected_model": convo.model.selected_model,
                "last_updated": convo.last_accessed
            })

        # Newest first
        summaries.sort(key=lambda x: x["last_updated"], reverse=True)
        return summaries


    async def delete_conversation(self, conversation_id: str) -> bool:
        """Stop and remove a conversation. Returns False if it did not exist."""
        controller = self.controllers.pop(conversation_id, None)
        if controller is None:
            return False
        await controller.aclose()
        logger.info(f"Deleted conversation {conversation_id}")
        return True


    async def cleanup_old_conversations(self) -> int:
        """Remove stale conversations, return count removed."""
        current_time = time.time()
        to_remove = [
            c_id for c_id, ctrl in self.controllers.items()
            if current_time - ctrl.conversation.last_accessed > self.max_age_seconds
            and not ctrl.conversation.is_waiting
        ]

        for c_id in to_remove:
            await self.delete_conversation(c_id)

        if to_remove:
            logger.info(f"Cleaned up {len(to_remove)} idle conversations")
        return len(to_remove)


    async def shutdown(self) -> None:
        """Close every conversation (application shutdown)."""
        for c_id in list(self.controllers):
            await self.delete_conversation(c_id)


    async def _run_cleanup_if_needed(self) -> None:
        """Run cleanup if over 100 conversations stored."""
        if len(self.controllers) > CLEANUP_THRESHOLD:
            await self.cleanup_old_conversations()
