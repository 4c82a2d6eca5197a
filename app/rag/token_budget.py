"""
Token budgeting for the Dewey chat backend.

Keeps a multi-turn conversation inside the selected model's context window:
estimates prompt size, resolves the model's context length, and when the
assembled prompt is too large asks the model to summarize prior turns,
falling back to truncation if summarization fails.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import math
import re
import time

from app.models import USER, ASSISTANT, Conversation, Turn
from app.rag.generation import build_summary_prompt
from app.rag.ollama_client import OllamaClient, OllamaError
from app.logging_config import get_logger

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4
RESERVED_TOKENS = 500  # Headroom for the model's own output

DEFAULT_CONTEXT_WINDOW = 4096
LARGE_CONTEXT_WINDOW = 8192
LARGE_CONTEXT_FAMILIES = ("llama3", "qwen")

# Fallback when summarization fails: only long histories get truncated
TRUNCATE_WHEN_OVER = 10
TRUNCATE_KEEP_LAST = 5

SUMMARY_TURN_TEMPLATE = "[Previous conversation summarized: {summary}]"


def estimate_tokens(text: str) -> int:
    """Approximate token count at ~4 characters per token."""
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def _positive_int(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value) if value > 0 else None


def parse_context_length(data: Dict) -> Optional[int]:
    """
    Extract a context length from an /api/show payload.

    Checked in order: top-level context_length, well-known model_info keys,
    any model_info key ending in ".context_length", "num_ctx N" in the
    parameters string, and "PARAMETER context_length N" in the modelfile.

    Returns:
        Context length, or None if no field is present
    """
    if not isinstance(data, dict):
        return None

    ctx = _positive_int(data.get("context_length"))
    if ctx:
        return ctx

    info = data.get("model_info")
    if isinstance(info, dict):
        for key in ("llama.context_length", "gemma3.context_length", "context_length"):
            ctx = _positive_int(info.get(key))
            if ctx:
                return ctx
        for key, value in info.items():
            if key.endswith(".context_length"):
                ctx = _positive_int(value)
                if ctx:
                    return ctx

    parameters = data.get("parameters")
    if isinstance(parameters, str):
        match = re.search(r"num_ctx\s+(\d+)", parameters, re.IGNORECASE)
        if match and int(match.group(1)) > 0:
            return int(match.group(1))

    modelfile = data.get("modelfile")
    if isinstance(modelfile, str):
        match = re.search(r"PARAMETER\s+context_length\s+(\d+)", modelfile, re.IGNORECASE)
        if match and int(match.group(1)) > 0:
            return int(match.group(1))

    return None


def default_context_window(model_name: str) -> int:
    """Per-family fallback when the server reports no context length."""
    name = (model_name or "").lower()
    if any(family in name for family in LARGE_CONTEXT_FAMILIES):
        return LARGE_CONTEXT_WINDOW
    return DEFAULT_CONTEXT_WINDOW


def split_pending_turn(turns: List[Turn]) -> Tuple[List[Turn], Optional[Turn]]:
    """Split a transcript into (prior turns, pending user turn or None)."""
    if turns and turns[-1].role == USER:
        return turns[:-1], turns[-1]
    return list(turns), None


class BudgetState(str, Enum):
    WITHIN_BUDGET = "within_budget"
    OVER_BUDGET = "over_budget"  # Over budget with no prior turns to summarize
    SUMMARIZED = "summarized"
    SUMMARIZATION_FAILED = "summarization_failed"


@dataclass
class BudgetCheck:
    estimated_tokens: int
    context_window: int
    available_tokens: int

    @property
    def over_budget(self) -> bool:
        return self.estimated_tokens > self.available_tokens


@dataclass
class BudgetResult:
    prompt: str
    state: BudgetState
    estimated_tokens: int
    context_window: int


class HistoryBudgetManager:
    """
    Fits a conversation's prompt into the model's context window.

    The model client is swapped by the owning controller when the model
    server URL changes.
    """

    def __init__(self, ollama_client: Optional[OllamaClient], reserved_tokens: int = RESERVED_TOKENS):
        self.ollama_client = ollama_client
        self.reserved_tokens = reserved_tokens


    async def get_context_window(self, conversation: Conversation) -> int:
        """Resolve and cache the selected model's context window."""
        state = conversation.model
        if state.context_window is not None:
            return state.context_window

        model = state.selected_model
        if not model or self.ollama_client is None:
            return DEFAULT_CONTEXT_WINDOW

        ctx = None
        try:
            data = await self.ollama_client.show(model)
            ctx = parse_context_length(data)
        except OllamaError as e:
            logger.warning(f"Could not fetch context window for {model}: {e}")

        if ctx is None:
            ctx = default_context_window(model)
            logger.info(f"Using default context window for {model}: {ctx}")
        else:
            logger.info(f"Model context window for {model}: {ctx}")

        state.context_window = ctx
        return ctx


    async def check(self, conversation: Conversation, prompt: str) -> BudgetCheck:
        """Estimate prompt tokens against the available budget."""
        context_window = await self.get_context_window(conversation)
        check = BudgetCheck(
            estimated_tokens=estimate_tokens(prompt),
            context_window=context_window,
            available_tokens=context_window - self.reserved_tokens
        )
        usage = check.estimated_tokens / check.available_tokens * 100 if check.available_tokens > 0 else float("inf")
        logger.info(
            f"Token usage: {check.estimated_tokens}/{check.available_tokens} available "
            f"(context window {context_window}, {usage:.1f}%)"
        )
        return check


    async def summarize_history(self, conversation: Conversation) -> BudgetState:
        """
        Replace prior turns with a model-written summary.

        On success the transcript becomes the summary turn followed by the
        pending user turn. On any failure, transcripts longer than 10 turns
        keep only their last 5; shorter ones are left untouched.

        Returns:
            SUMMARIZED, SUMMARIZATION_FAILED, or OVER_BUDGET when there was
            nothing to summarize
        """
        async with conversation.summarization_lock:
            prior, pending = split_pending_turn(conversation.turns)
            summary_prompt = build_summary_prompt(prior)
            if not summary_prompt:
                logger.warning("No prior history to summarize; skipping summarization")
                return BudgetState.OVER_BUDGET

            model = conversation.model.selected_model
            summarize_start = time.time()
            try:
                if self.ollama_client is None or not model:
                    raise OllamaError("Model URL or model not available")
                summary = (await self.ollama_client.generate(model, summary_prompt)).strip()
                if not summary:
                    raise OllamaError("Empty summary returned")
            except OllamaError as e:
                logger.error(f"Failed to summarize history: {e}")
                if len(conversation.turns) > TRUNCATE_WHEN_OVER:
                    old_length = len(conversation.turns)
                    conversation.turns = conversation.turns[-TRUNCATE_KEEP_LAST:]
                    logger.warning(f"Summarization failed, keeping last {TRUNCATE_KEEP_LAST} turns ({old_length} -> {len(conversation.turns)})")
                return BudgetState.SUMMARIZATION_FAILED

            old_length = len(conversation.turns)
            new_turns = [Turn(role=ASSISTANT, content=SUMMARY_TURN_TEMPLATE.format(summary=summary))]
            if pending is not None:
                new_turns.append(pending)
            conversation.turns = new_turns

            summarize_time = (time.time() - summarize_start) * 1000
            logger.info(f"History summarized: {old_length} turns -> {len(new_turns)} in {summarize_time:.0f}ms")
            return BudgetState.SUMMARIZED


    async def fit(self, conversation: Conversation, build_prompt: Callable[[], str]) -> BudgetResult:
        """
        Build the prompt and bring it within budget.

        Args:
            conversation: Conversation whose transcript may be summarized or truncated
            build_prompt: Rebuilds the prompt from the conversation's current turns

        Returns:
            BudgetResult with the final prompt and the terminal budget state
        """
        prompt = build_prompt()
        check = await self.check(conversation, prompt)
        if not check.over_budget:
            return BudgetResult(prompt, BudgetState.WITHIN_BUDGET, check.estimated_tokens, check.context_window)

        prior, _ = split_pending_turn(conversation.turns)
        if not prior:
            logger.warning(f"Prompt exceeds budget ({check.estimated_tokens} > {check.available_tokens}) with no history to summarize")
            return BudgetResult(prompt, BudgetState.OVER_BUDGET, check.estimated_tokens, check.context_window)

        logger.info(f"Token limit exceeded ({check.estimated_tokens} > {check.available_tokens}), summarizing history")
        state = await self.summarize_history(conversation)

        prompt = build_prompt()
        tokens = estimate_tokens(prompt)
        logger.info(f"Prompt rebuilt after {state.value}: {tokens} estimated tokens")
        return BudgetResult(prompt, state, tokens, check.context_window)
