"""
Conversation controller for the Dewey chat backend.

Top-level orchestration of one conversation: model connection lifecycle
(connect, select, retry, liveness monitor), optional RAG retrieval, citation
recording, token budgeting, prompt assembly and the streamed reply.
"""
from typing import AsyncIterator, Dict, List, Optional, Tuple
import time

import httpx

from app.models import USER, ASSISTANT, ConnectionStatus, Conversation, CitationSource, Turn
from app.rag.citations import CitationAggregator, CitationPanel
from app.rag.connection_monitor import ConnectionMonitor, MONITOR_INTERVAL_SECONDS
from app.rag.generation import build_prompt, content_for_prompt, format_related_resources
from app.rag.ollama_client import (
    OllamaClient,
    OllamaError,
    OllamaTimeoutError,
    MODEL_CHECK_TIMEOUT,
    MONITOR_CHECK_TIMEOUT,
)
from app.rag.token_budget import HistoryBudgetManager, split_pending_turn
from app.retrieval.rag_client import (
    RAGClient,
    RAGError,
    build_rag_context,
    collect_sources,
    select_top_results,
)
from app.settings_store import ChatSettings
from app.logging_config import get_logger

logger = get_logger(__name__)

MIN_SUBSTANTIVE_LENGTH = 15

# Short greetings/acknowledgements that never warrant retrieval on their own
TRIVIAL_PHRASES = (
    "hi", "hello", "hey", "ok", "okay", "thanks", "thank you", "yes", "no",
    "?", "!", ".", "nope", "yep", "yup", "sup", "yo", "hiya", "howdy",
    "greetings", "good morning", "good afternoon", "good evening",
    "bye", "goodbye", "lol", "lmao",
)

CONNECTION_LOST_MESSAGE = "Connection to Ollama interrupted."


class ConversationBusyError(Exception):
    """Raised when a change would disturb a send that is still streaming."""


def is_substantive_prompt(
    message: str,
    trivial_phrases: Tuple[str, ...] = TRIVIAL_PHRASES,
    min_length: int = MIN_SUBSTANTIVE_LENGTH
) -> bool:
    """True if a message is long enough and not a trivial phrase."""
    trimmed = (message or "").strip()
    if len(trimmed) < min_length:
        return False
    return trimmed.lower() not in {p.lower() for p in trivial_phrases}


def format_history_for_rag(turns: List[Turn]) -> str:
    """'User: ...\\nAssistant: ...' transcript sent to the RAG server for query expansion."""
    history = ""
    for turn in turns:
        label = "User" if turn.role == USER else "Assistant"
        history += f"{label}: {content_for_prompt(turn)}\n"
    return history


class ConversationController:
    """
    Owns one Conversation and every collaborator that acts on it.

    Sends are serialized by conversation.is_waiting: the flag is checked and
    set with no await in between and always cleared when the send ends.
    """

    def __init__(
            self,
            conversation: Conversation,
            settings: ChatSettings,
            append_related_resources: bool = True,
            trivial_phrases: Tuple[str, ...] = TRIVIAL_PHRASES,
            monitor_interval: float = MONITOR_INTERVAL_SECONDS,
            ollama_transport: Optional[httpx.AsyncBaseTransport] = None,
            rag_transport: Optional[httpx.AsyncBaseTransport] = None
            ):
        self.conversation = conversation
        self.settings = settings
        self.append_related_resources = append_related_resources
        self.trivial_phrases = trivial_phrases
        self._ollama_transport = ollama_transport
        self._rag_transport = rag_transport

        self.ollama = OllamaClient(settings.ollama_url, transport=ollama_transport)
        self.rag = RAGClient(settings.resolved_rag_url, transport=rag_transport)
        self.budget = HistoryBudgetManager(self.ollama)
        self.citations = CitationAggregator()
        self.monitor = ConnectionMonitor(self._monitor_check, self._on_connection_lost, interval=monitor_interval)


    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def apply_settings(self, settings: ChatSettings) -> None:
        """
        Adopt updated settings.

        Changing the model server URL disconnects and starts a fresh
        conversation; changing the RAG URL swaps the RAG client. Neither is
        allowed while a send is in progress.

        Raises:
            ConversationBusyError: a client swap was requested mid-send
        """
        if self.conversation.is_waiting and self.swaps_clients(settings):
            raise ConversationBusyError("Cannot change server URLs while a response is in progress")

        ollama_changed = self._ollama_url_changed(settings)
        rag_changed = settings.resolved_rag_url != self.settings.resolved_rag_url
        self.settings = settings

        if ollama_changed:
            logger.info(f"Model server URL changed to {settings.ollama_url}; resetting conversation")
            self._teardown_connection("")
            self.conversation.model.available_models = []
            self.conversation.reset()
            await self.ollama.aclose()
            self.ollama = OllamaClient(settings.ollama_url, transport=self._ollama_transport)
            self.budget.ollama_client = self.ollama

        if rag_changed:
            await self.rag.aclose()
            self.rag = RAGClient(settings.resolved_rag_url, transport=self._rag_transport)


    def _ollama_url_changed(self, settings: ChatSettings) -> bool:
        return settings.ollama_url.strip() != self.settings.ollama_url.strip()


    def swaps_clients(self, settings: ChatSettings) -> bool:
        """True if adopting settings would replace the model or RAG client."""
        return self._ollama_url_changed(settings) or settings.resolved_rag_url != self.settings.resolved_rag_url


    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> Dict:
        """
        List models on the configured server and verify the first one.

        Returns:
            Current status (see status())
        """
        state = self.conversation.model
        if not self.settings.ollama_url.strip():
            self._teardown_connection("No Ollama URL configured")
            return self.status()

        self.monitor.stop()
        state.status = ConnectionStatus.CHECKING
        try:
            models = await self.ollama.tags()
        except OllamaError as e:
            logger.error(f"Could not list models at {self.ollama.base_url}: {e}")
            state.available_models = []
            self._teardown_connection(str(e), retry_type="ollama")
            return self.status()

        state.available_models = models
        logger.info(f"Found {len(models)} models at {self.ollama.base_url}")
        if not models:
            self._teardown_connection("No models available", retry_type="ollama")
            return self.status()

        return await self.select_model(models[0])


    async def select_model(self, model: Optional[str]) -> Dict:
        """
        Select a model after checking it responds to /api/show.

        An empty model deselects. A failed check clears the selection and
        offers a retry for the same model.
        """
        state = self.conversation.model
        if not model:
            self._teardown_connection("")
            return self.status()

        self.monitor.stop()
        state.status = ConnectionStatus.CHECKING
        check_start = time.time()
        try:
            await self.ollama.verify_model(model, timeout=MODEL_CHECK_TIMEOUT)
        except OllamaTimeoutError:
            logger.error(f"Model check timed out for {model}")
            self._teardown_connection("Model check timed out. Ollama may be busy or unreachable.", retry_type="model", retry_model=model)
            return self.status()
        except OllamaError as e:
            logger.error(f"Model check failed for {model}: {e}")
            self._teardown_connection(f"Model check failed: {e}", retry_type="model", retry_model=model)
            return self.status()

        check_time = (time.time() - check_start) * 1000
        logger.info(f"Model {model} is available (check: {check_time:.0f}ms)")

        state.selected_model = model
        state.status = ConnectionStatus.CONNECTED
        state.last_error = ""
        state.retry_type = None
        state.retry_model = None
        state.context_window = None
        self.monitor.start()
        return self.status()


    async def retry(self) -> Dict:
        """Re-run whichever check failed last."""
        state = self.conversation.model
        if state.retry_type == "model" and state.retry_model:
            return await self.select_model(state.retry_model)
        if state.retry_type == "ollama":
            return await self.connect()
        return self.status()


    def _teardown_connection(self, error: str, retry_type: Optional[str] = None, retry_model: Optional[str] = None) -> None:
        """Synchronously drop connected state and stop the monitor."""
        state = self.conversation.model
        self.monitor.stop()
        state.selected_model = None
        state.status = ConnectionStatus.DISCONNECTED
        state.last_error = error
        state.retry_type = retry_type
        state.retry_model = retry_model
        state.context_window = None


    async def _monitor_check(self) -> bool:
        model = self.conversation.model.selected_model
        if not model:
            return False
        try:
            await self.ollama.show(model, timeout=MONITOR_CHECK_TIMEOUT)
        except OllamaError as e:
            logger.warning(f"Connection check failed for {model}: {e}")
            return False
        return True


    def _on_connection_lost(self) -> None:
        if self.conversation.model.selected_model is None:
            return
        logger.error(CONNECTION_LOST_MESSAGE)
        self._teardown_connection(CONNECTION_LOST_MESSAGE, retry_type="ollama")


    @property
    def ready(self) -> bool:
        """A model server URL is configured and a model is selected and connected."""
        return bool(self.settings.ollama_url.strip()) and self.conversation.model.connected


    def status(self) -> Dict:
        state = self.conversation.model
        connected = state.connected
        return {
            "status": state.status.value,
            "ollama_url": self.settings.ollama_url,
            "selected_model": state.selected_model,
            "available_models": list(state.available_models),
            "last_error": state.last_error,
            "can_retry": state.retry_type is not None,
            "context_window": state.context_window,
            "system_message_enabled": connected,
            "rag_enabled": connected,
            "citations_enabled": connected,
            "send_enabled": self.ready and not self.conversation.is_waiting,
        }


    # ------------------------------------------------------------------
    # RAG
    # ------------------------------------------------------------------

    async def list_collections(self) -> List[str]:
        """Collections on the RAG server; selected collections that vanished are dropped."""
        collections = await self.rag.list_collections()
        self.settings.rag_collections = [c for c in self.settings.rag_collections if c in collections]
        return collections


    def rag_configured(self) -> bool:
        return bool(self.settings.rag_enabled and self.settings.rag_collections and self.rag.base_url)


    def should_query_rag(self, message: str, has_history: bool) -> bool:
        return self.rag_configured() and (is_substantive_prompt(message, self.trivial_phrases) or has_history)


    async def _retrieve(self, message: str, prior: List[Turn]) -> Tuple[str, List[CitationSource], Dict]:
        """Run the RAG query for a send; failures degrade to no context."""
        if not self.rag_configured():
            return "", [], {"type": "rag", "status": "disabled"}
        if not self.should_query_rag(message, bool(prior)):
            logger.info("RAG skipped: prompt not substantive and no conversation history")
            return "", [], {"type": "rag", "status": "skipped"}

        try:
            results = await self.rag.query(
                message,
                self.settings.rag_collections,
                self.settings.rag_threshold,
                format_history_for_rag(prior)
            )
        except RAGError as e:
            logger.error(f"RAG query error: {e}")
            return "", [], {"type": "rag", "status": "error", "message": str(e)}

        top = select_top_results(results)
        if not top:
            logger.info("No RAG results found")
            return "", [], {"type": "rag", "status": "empty", "count": 0}

        sources = collect_sources(top, self.rag.base_url)
        logger.info(f"Using top {len(top)} RAG results from {len(sources)} sources")
        return build_rag_context(top), sources, {"type": "rag", "status": "ok", "count": len(top)}


    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, text: str) -> AsyncIterator[Dict]:
        """
        Run one send and yield its events.

        Events: start, rag, budget, token (repeated), then complete or
        error. A send that cannot start yields a single rejected event.
        """
        conversation = self.conversation
        message = (text or "").strip()

        if conversation.is_waiting:
            yield {"type": "rejected", "reason": "A response is still in progress"}
            return
        if not message:
            yield {"type": "rejected", "reason": "Message is empty"}
            return
        if not self.ready:
            yield {"type": "rejected", "reason": "No model selected"}
            return

        model = conversation.model.selected_model
        conversation.is_waiting = True
        try:
            conversation.turns.append(Turn(role=USER, content=message))
            conversation.last_accessed = time.time()
            logger.info(f"Received message: {message[:100]}")
            yield {"type": "start", "conversation_id": conversation.conversation_id}

            prior, _ = split_pending_turn(conversation.turns)
            rag_context, sources, rag_event = await self._retrieve(message, prior)
            yield rag_event
            if sources:
                self.citations.record_turn(conversation, sources)

            def rebuild() -> str:
                history, _ = split_pending_turn(conversation.turns)
                return build_prompt(
                    self.settings.system_message,
                    self.settings.profile,
                    rag_context,
                    history,
                    message
                )

            result = await self.budget.fit(conversation, rebuild)
            yield {
                "type": "budget",
                "state": result.state.value,
                "estimated_tokens": result.estimated_tokens,
                "context_window": result.context_window,
            }

            async for event in self._stream_reply(model, result.prompt, sources):
                yield event
        finally:
            conversation.is_waiting = False
            conversation.last_accessed = time.time()


    async def _stream_reply(self, model: str, prompt: str, sources: List[CitationSource]) -> AsyncIterator[Dict]:
        """Stream the model reply into a growing assistant turn."""
        conversation = self.conversation
        assistant_turn: Optional[Turn] = None

        generation_start = time.time()
        try:
            async for chunk in self.ollama.generate_stream(model, prompt):
                if not chunk.response:
                    continue
                if assistant_turn is None:
                    assistant_turn = Turn(role=ASSISTANT, content="")
                    conversation.turns.append(assistant_turn)
                assistant_turn.content += chunk.response
                yield {"type": "token", "content": chunk.response}
        except OllamaError as e:
            logger.error(f"Error generating response: {e}")
            conversation.turns.append(Turn(role=ASSISTANT, content=f"Error: {e}"))
            yield {"type": "error", "message": str(e)}
            return

        generation_time = (time.time() - generation_start) * 1000
        if assistant_turn is None:
            logger.warning("No response content received")
            yield {"type": "complete", "content": ""}
            return

        assistant_turn.content = assistant_turn.content.lstrip()
        if self.append_related_resources and sources:
            assistant_turn.content += format_related_resources(sources)

        logger.info(f"Generated response of {len(assistant_turn.content)} characters in {generation_time:.0f}ms")
        yield {"type": "complete", "content": assistant_turn.content}


    # ------------------------------------------------------------------
    # Conversation state
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Start a new conversation: clear transcript, citations and panel snapshot."""
        self.conversation.reset()


    def citation_panel(self) -> CitationPanel:
        return self.citations.panel(self.conversation)


    async def aclose(self) -> None:
        """Stop the monitor and release HTTP clients."""
        self.monitor.stop()
        await self.ollama.aclose()
        await self.rag.aclose()
