"""
Per-user chat settings for the Dewey chat backend.

Settings are a flat record per user (model/RAG URLs, RAG threshold and
collections, system message and its history, theme, font size, profile
fields) persisted in a single JSON file. Defaults come from DEWEY_DEFAULT_*
environment variables.
"""
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Dict, List, Optional
import json
import os

from app.models import UserProfile
from app.rag.ollama_client import DEFAULT_OLLAMA_URL
from app.retrieval.rag_client import RAG_THRESHOLD_DEFAULT, derive_rag_url
from app.logging_config import get_logger

logger = get_logger(__name__)

THEME_ORDER = ["light", "dark", "muted-green", "gray", "muted-orange", "forest", "muted-blue"]
CHAT_FONT_MIN = 10
CHAT_FONT_MAX = 24
CHAT_FONT_DEFAULT = 14
SYSTEM_MESSAGE_HISTORY_LIMIT = 20

PROFILE_FIELDS = ["user_preferred_name", "user_school_or_office", "user_role", "user_context"]


@dataclass
class ChatSettings:
    ollama_url: str = DEFAULT_OLLAMA_URL
    rag_server_url: str = ""
    rag_threshold: float = RAG_THRESHOLD_DEFAULT
    rag_collections: List[str] = field(default_factory=list)
    rag_enabled: bool = True
    system_message: str = ""
    system_message_history: List[str] = field(default_factory=list)
    theme: str = "light"
    chat_font_size: int = CHAT_FONT_DEFAULT
    user_preferred_name: str = ""
    user_school_or_office: str = ""
    user_role: str = ""
    user_context: str = ""

    @property
    def resolved_rag_url(self) -> str:
        """Configured RAG URL, or one derived from the model server host."""
        return self.rag_server_url.strip() or derive_rag_url(self.ollama_url)

    @property
    def profile(self) -> UserProfile:
        return UserProfile(
            preferred_name=self.user_preferred_name,
            school_or_office=self.user_school_or_office,
            role=self.user_role,
            context=self.user_context
        )

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["resolved_rag_url"] = self.resolved_rag_url
        return data


def _clean_patch(patch: Dict) -> Dict:
    """Keep only known keys whose values have the expected type."""
    known = {f.name: f for f in fields(ChatSettings)}
    cleaned = {}
    for key, value in patch.items():
        if key not in known or value is None:
            continue

        if key == "rag_threshold":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            cleaned[key] = float(value)
        elif key == "chat_font_size":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            cleaned[key] = min(CHAT_FONT_MAX, max(CHAT_FONT_MIN, int(value)))
        elif key == "theme":
            if value in THEME_ORDER:
                cleaned[key] = value
        elif key == "rag_enabled":
            if isinstance(value, bool):
                cleaned[key] = value
        elif key in ("rag_collections", "system_message_history"):
            if isinstance(value, list):
                cleaned[key] = [str(v) for v in value if isinstance(v, str)]
        elif isinstance(value, str):
            cleaned[key] = value

    return cleaned


def default_settings_from_env() -> Dict:
    """Defaults applied under stored settings, from DEWEY_DEFAULT_* variables."""
    out = {}

    ollama = os.getenv("DEWEY_DEFAULT_OLLAMA_URL", "").strip()
    if ollama:
        out["ollama_url"] = ollama

    rag = os.getenv("DEWEY_DEFAULT_RAG_SERVER_URL", "").strip()
    if rag:
        out["rag_server_url"] = rag

    threshold = os.getenv("DEWEY_DEFAULT_RAG_THRESHOLD", "").strip()
    if threshold:
        try:
            out["rag_threshold"] = float(threshold)
        except ValueError:
            logger.warning(f"Ignoring invalid DEWEY_DEFAULT_RAG_THRESHOLD: {threshold}")

    collections = os.getenv("DEWEY_DEFAULT_RAG_COLLECTIONS", "").strip()
    if collections:
        out["rag_collections"] = [c.strip() for c in collections.split(",") if c.strip()]

    system_message = os.getenv("DEWEY_DEFAULT_SYSTEM_MESSAGE")
    if system_message:
        out["system_message"] = system_message

    return out


def push_system_message(history: List[str], message: str) -> List[str]:
    """Most-recent-first, deduplicated, capped history with message at the front."""
    return ([message] + [m for m in history if m != message])[:SYSTEM_MESSAGE_HISTORY_LIMIT]


class SettingsStore:
    """
    JSON-file settings store keyed by user id.

    Read on session start; written on each update.
    """

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = Path(data_dir or os.getenv("DEWEY_DATA_DIR") or Path.cwd() / "data")
        self.path = self.data_dir / "settings.json"


    def get(self, user_id: str) -> ChatSettings:
        """Stored settings for a user layered over environment defaults."""
        stored = self._read_all().get(user_id, {})
        merged = {**default_settings_from_env(), **_clean_patch(stored)}
        return ChatSettings(**merged)


    def preview(self, user_id: str, patch: Dict) -> ChatSettings:
        """Settings as update() would leave them, without writing."""
        stored = {**self._read_all().get(user_id, {}), **_clean_patch(patch)}
        return ChatSettings(**{**default_settings_from_env(), **_clean_patch(stored)})


    def missing_profile_fields(self, user_id: str) -> List[str]:
        """Profile fields that are still blank for a user."""
        settings = self.get(user_id)
        return [f for f in PROFILE_FIELDS if not getattr(settings, f).strip()]


    def update(self, user_id: str, patch: Dict) -> ChatSettings:
        """Merge a partial update; unknown or mistyped keys are ignored."""
        all_settings = self._read_all()
        current = all_settings.get(user_id, {})
        current.update(_clean_patch(patch))
        all_settings[user_id] = current
        self._write_all(all_settings)
        return self.get(user_id)


    def set_system_message(self, user_id: str, message: str) -> ChatSettings:
        """Set the active system message and push it onto the history."""
        message = message.strip()
        current = self.get(user_id)
        patch = {"system_message": message}
        if message:
            patch["system_message_history"] = push_system_message(current.system_message_history, message)
        return self.update(user_id, patch)


    def remove_system_message_history(self, user_id: str, message: str) -> ChatSettings:
        current = self.get(user_id)
        history = [m for m in current.system_message_history if m != message]
        return self.update(user_id, {"system_message_history": history})


    def delete(self, user_id: str) -> None:
        all_settings = self._read_all()
        if user_id not in all_settings:
            return
        del all_settings[user_id]
        self._write_all(all_settings)


    def _read_all(self) -> Dict[str, Dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read settings file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}


    def _write_all(self, data: Dict[str, Dict]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
