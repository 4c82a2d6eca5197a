"""
Core data models for the Dewey chat backend.

These models represent the primary data structures shared by prompt assembly,
token budgeting, citation ranking and conversation management.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict
import asyncio
import time


USER = "user"
ASSISTANT = "assistant"


@dataclass
class Turn:
    """
    One message in the conversation transcript.

    Only the assistant turn that is currently streaming is mutated, and only by
    appending to its content.
    """
    role: str  # "user" | "assistant"
    content: str

    def to_dict(self) -> Dict:
        return {"role": self.role, "content": self.content}


@dataclass
class Citation:
    """
    A retrieved source recorded for one RAG-augmented turn.

    turn_index is shared by every citation recorded for the same query and is
    never reused within a conversation.
    """
    source_name: str
    url: str
    turn_index: int
    similarity: Optional[float] = None


@dataclass
class CitationSource:
    """A unique source returned by one RAG query, before it becomes a Citation."""
    source_name: str
    url: str
    similarity: Optional[float] = None


@dataclass
class RAGResult:
    """
    A single scored snippet returned by the RAG server.

    Field names follow the RAG server payload (source_name, source_url, group).
    """
    text: str
    source_name: str
    source_url: Optional[str] = None
    similarity: Optional[float] = None
    group: Optional[str] = None


@dataclass
class UserProfile:
    """Profile fields injected into the prompt's user-context block."""
    preferred_name: str = ""
    school_or_office: str = ""
    role: str = ""
    context: str = ""


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CHECKING = "checking"


@dataclass
class ModelState:
    """
    Model-server connection state for one conversation.

    context_window is cached per model selection and reset whenever the
    selected model changes.
    """
    available_models: List[str] = field(default_factory=list)
    selected_model: Optional[str] = None
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: str = ""
    retry_type: Optional[str] = None  # "ollama" | "model"
    retry_model: Optional[str] = None
    context_window: Optional[int] = None

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED and bool(self.selected_model)


@dataclass
class Conversation:
    """
    A single conversation: transcript, citations and connection state.

    Owned by exactly one ConversationController; nothing outside that
    controller mutates turns or citations.
    """
    conversation_id: str
    user_id: str
    turns: List[Turn] = field(default_factory=list)
    citations: List[Citation] = field(default_factory=list)
    citation_turn_index: int = 0
    previous_order: List[str] = field(default_factory=list)  # keys as last shown
    previous_entries: List[Dict] = field(default_factory=list)  # {key, source_name, url}
    model: ModelState = field(default_factory=ModelState)
    is_waiting: bool = False
    summarization_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    created_at: float = field(default_factory=time.time)
    last_accessed: float = field(default_factory=time.time)

    def reset(self) -> None:
        """Clear transcript and citation state for a new conversation."""
        self.turns = []
        self.citations = []
        self.citation_turn_index = 0
        self.previous_order = []
        self.previous_entries = []
        self.last_accessed = time.time()
