"""
Tests for context-window resolution, summarization and the truncation fallback.
"""
import unittest

from app.models import USER, ASSISTANT, Conversation, Turn
from app.rag.generation import SUMMARY_INSTRUCTION, build_prompt
from app.rag.ollama_client import OllamaClient
from app.rag.token_budget import (
    BudgetState,
    HistoryBudgetManager,
    default_context_window,
    parse_context_length,
    split_pending_turn,
)
from tests.fakes import FakeOllama


def long_turns(count: int, size: int = 300):
    turns = []
    for i in range(count):
        role = USER if i % 2 == 0 else ASSISTANT
        turns.append(Turn(role=role, content=f"turn {i} " + "x" * size))
    return turns


class TestParseContextLength(unittest.TestCase):

    def test_top_level_field(self):
        assert parse_context_length({"context_length": 32768}) == 32768

    def test_model_info_known_keys(self):
        assert parse_context_length({"model_info": {"llama.context_length": 8192}}) == 8192
        assert parse_context_length({"model_info": {"gemma3.context_length": 131072}}) == 131072

    def test_model_info_any_family(self):
        assert parse_context_length({"model_info": {"qwen2.context_length": 32768}}) == 32768

    def test_parameters_num_ctx(self):
        assert parse_context_length({"parameters": "temperature 0.7\nnum_ctx 2048"}) == 2048

    def test_modelfile_parameter(self):
        assert parse_context_length({"modelfile": "FROM x\nPARAMETER context_length 16384"}) == 16384

    def test_missing_or_invalid(self):
        assert parse_context_length({}) is None
        assert parse_context_length({"context_length": 0}) is None
        assert parse_context_length({"model_info": {"llama.context_length": "big"}}) is None

    def test_family_defaults(self):
        assert default_context_window("llama3:8b") == 8192
        assert default_context_window("qwen2.5:7b") == 8192
        assert default_context_window("mistral:7b") == 4096


class TestSplitPendingTurn(unittest.TestCase):

    def test_trailing_user_turn_is_pending(self):
        turns = [Turn(role=USER, content="a"), Turn(role=ASSISTANT, content="b"), Turn(role=USER, content="c")]
        prior, pending = split_pending_turn(turns)
        assert [t.content for t in prior] == ["a", "b"]
        assert pending.content == "c"

    def test_no_pending_turn(self):
        turns = [Turn(role=USER, content="a"), Turn(role=ASSISTANT, content="b")]
        prior, pending = split_pending_turn(turns)
        assert len(prior) == 2
        assert pending is None


class TestHistoryBudgetManager(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.fake = FakeOllama()
        self.client = OllamaClient("http://ollama.test:11434", transport=self.fake.transport)
        self.manager = HistoryBudgetManager(self.client)
        self.conversation = Conversation(conversation_id="c1", user_id="u1")
        self.conversation.model.selected_model = "llama3:8b"

    async def asyncTearDown(self):
        await self.client.aclose()

    def build(self):
        history, pending = split_pending_turn(self.conversation.turns)
        return build_prompt("", None, "", history, pending.content if pending else "")

    def use_small_window(self):
        # 100 usable tokens after the 500-token reserve
        self.fake.show_payload = {"name": "llama3:8b", "context_length": 600}

    async def test_context_window_is_cached(self):
        assert await self.manager.get_context_window(self.conversation) == 8192
        assert await self.manager.get_context_window(self.conversation) == 8192

        assert len(self.fake.calls("/api/show")) == 1
        assert self.conversation.model.context_window == 8192

    async def test_context_window_falls_back_when_show_fails(self):
        self.fake.show_error = "model not found"
        self.conversation.model.selected_model = "mistral:7b"

        assert await self.manager.get_context_window(self.conversation) == 4096

    async def test_context_window_without_model(self):
        self.conversation.model.selected_model = None
        assert await self.manager.get_context_window(self.conversation) == 4096
        assert self.conversation.model.context_window is None

    async def test_within_budget_leaves_transcript_alone(self):
        self.conversation.turns = [Turn(role=USER, content="Short question here please")]
        result = await self.manager.fit(self.conversation, self.build)

        assert result.state == BudgetState.WITHIN_BUDGET
        assert result.context_window == 8192
        assert len(self.conversation.turns) == 1
        assert self.fake.calls("/api/generate") == []

    async def test_over_budget_summarizes_to_two_turns(self):
        self.use_small_window()
        self.conversation.turns = long_turns(4) + [Turn(role=USER, content="What should I do next?")]

        result = await self.manager.fit(self.conversation, self.build)

        assert result.state == BudgetState.SUMMARIZED
        assert len(self.conversation.turns) == 2
        summary_turn, pending = self.conversation.turns
        assert summary_turn.role == ASSISTANT
        assert summary_turn.content == "[Previous conversation summarized: The user asked about planning and got advice.]"
        assert pending.content == "What should I do next?"
        assert "[Previous conversation summarized:" in result.prompt

        summary_request = self.fake.calls("/api/generate", stream=False)[0]
        assert summary_request["model"] == "llama3:8b"
        assert summary_request["prompt"].startswith(SUMMARY_INSTRUCTION)
        assert "user: turn 0" in summary_request["prompt"]
        assert "What should I do next?" not in summary_request["prompt"]

    async def test_failed_summary_truncates_long_history(self):
        self.use_small_window()
        self.fake.summary = None
        self.conversation.turns = long_turns(14) + [Turn(role=USER, content="Latest question")]

        result = await self.manager.fit(self.conversation, self.build)

        assert result.state == BudgetState.SUMMARIZATION_FAILED
        assert len(self.conversation.turns) == 5
        assert self.conversation.turns[-1].content == "Latest question"
        assert self.conversation.turns[0].content.startswith("turn 10 ")

    async def test_failed_summary_keeps_short_history(self):
        self.use_small_window()
        self.fake.summary = None
        self.conversation.turns = long_turns(3) + [Turn(role=USER, content="Latest question")]

        result = await self.manager.fit(self.conversation, self.build)

        assert result.state == BudgetState.SUMMARIZATION_FAILED
        assert len(self.conversation.turns) == 4

    async def test_empty_summary_counts_as_failure(self):
        self.use_small_window()
        self.fake.summary = "   "
        self.conversation.turns = long_turns(4) + [Turn(role=USER, content="Latest question")]

        result = await self.manager.fit(self.conversation, self.build)

        assert result.state == BudgetState.SUMMARIZATION_FAILED
        assert len(self.conversation.turns) == 5

    async def test_over_budget_without_history(self):
        self.use_small_window()
        self.conversation.turns = [Turn(role=USER, content="y" * 2000)]

        result = await self.manager.fit(self.conversation, self.build)

        assert result.state == BudgetState.OVER_BUDGET
        assert len(self.conversation.turns) == 1
        assert self.fake.calls("/api/generate") == []
