"""
Tests for citation grouping, ranking, order diffing and panel emphasis.
"""
import unittest

from app.models import Citation, CitationSource, Conversation
from app.rag.citations import (
    ChangeState,
    CitationAggregator,
    CitationGroup,
    citation_key,
    diff_order,
    emphasis,
    group_citations,
    rank_citations,
)


def group(name: str, score: float = 0.0) -> CitationGroup:
    return CitationGroup(key=citation_key(name, f"http://rag/{name}"), source_name=name, url=f"http://rag/{name}", score=score)


class TestRankCitations(unittest.TestCase):

    def test_groups_by_name_and_url(self):
        citations = [
            Citation(source_name="A", url="http://rag/A", turn_index=0, similarity=0.7),
            Citation(source_name="A", url="http://rag/A", turn_index=1, similarity=0.9),
            Citation(source_name="B", url="http://rag/B", turn_index=0, similarity=0.8),
        ]
        groups, max_turn = group_citations(citations)

        assert max_turn == 1
        assert [g.source_name for g in groups] == ["A", "B"]
        assert groups[0].count == 2
        assert groups[0].max_turn_in_group == 1
        assert groups[0].max_similarity == 0.9

    def test_missing_similarity_counts_as_zero_strength(self):
        citations = [
            Citation(source_name="A", url="http://rag/A", turn_index=0, similarity=0.9),
            Citation(source_name="B", url="http://rag/B", turn_index=0, similarity=None),
        ]
        ranked = rank_citations(citations)

        assert [g.source_name for g in ranked] == ["A", "B"]
        assert abs(ranked[0].score - 1.0) < 1e-9
        # frequency 1 + recency 1, strength 0
        assert abs(ranked[1].score - 2 / 3) < 1e-9

    def test_recency_favours_latest_turn(self):
        citations = [
            Citation(source_name="Old", url="http://rag/Old", turn_index=0, similarity=0.8),
            Citation(source_name="New", url="http://rag/New", turn_index=1, similarity=0.8),
        ]
        ranked = rank_citations(citations)
        assert [g.source_name for g in ranked] == ["New", "Old"]

    def test_equal_scores_ordered_by_key(self):
        citations = [
            Citation(source_name="Zeta", url="http://rag/Z", turn_index=0, similarity=0.5),
            Citation(source_name="Alpha", url="http://rag/A", turn_index=0, similarity=0.5),
        ]
        ranked = rank_citations(citations)
        assert [g.source_name for g in ranked] == ["Alpha", "Zeta"]

    def test_ranking_is_idempotent(self):
        citations = [
            Citation(source_name="A", url="http://rag/A", turn_index=0, similarity=0.6),
            Citation(source_name="B", url="http://rag/B", turn_index=1, similarity=0.9),
            Citation(source_name="A", url="http://rag/A", turn_index=1, similarity=0.4),
            Citation(source_name="C", url="#", turn_index=0, similarity=None),
        ]
        first = [(g.key, g.score) for g in rank_citations(citations)]
        second = [(g.key, g.score) for g in rank_citations(citations)]
        assert first == second

    def test_empty(self):
        assert rank_citations([]) == []


class TestDiffOrder(unittest.TestCase):

    def test_rise_fall_and_new(self):
        a, b, c, d = group("A"), group("B"), group("C"), group("D")
        changes = diff_order([a.key, b.key, c.key], [b, a, d])

        assert changes[b.key] == ChangeState.ROSE
        assert changes[a.key] == ChangeState.FELL
        assert changes[d.key] == ChangeState.NEW
        assert c.key not in changes

    def test_unchanged_position(self):
        a, b = group("A"), group("B")
        changes = diff_order([a.key, b.key], [a, b])
        assert changes == {a.key: ChangeState.SAME, b.key: ChangeState.SAME}


class TestEmphasis(unittest.TestCase):

    def test_opacity_scales_with_score(self):
        top, half = group("A", score=0.8), group("B", score=0.4)
        opacity = emphasis([top, half])

        assert abs(opacity[top.key] - 1.0) < 1e-9
        assert abs(opacity[half.key] - 0.7) < 1e-9

    def test_zero_scores_use_minimum_opacity(self):
        zero = group("A", score=0.0)
        assert abs(emphasis([zero])[zero.key] - 0.4) < 1e-9


class TestCitationAggregator(unittest.TestCase):

    def setUp(self):
        self.conversation = Conversation(conversation_id="c1", user_id="u1")
        self.aggregator = CitationAggregator()

    def test_record_turn_shares_turn_index(self):
        index = self.aggregator.record_turn(self.conversation, [
            CitationSource(source_name="A", url="http://rag/A", similarity=0.8),
            CitationSource(source_name="B", url="http://rag/B", similarity=0.6),
        ])

        assert index == 0
        assert [c.turn_index for c in self.conversation.citations] == [0, 0]
        assert self.conversation.citation_turn_index == 1

    def test_record_turn_without_sources_is_noop(self):
        assert self.aggregator.record_turn(self.conversation, []) == -1
        assert self.conversation.citations == []
        assert self.conversation.citation_turn_index == 0

    def test_first_panel_has_no_animation(self):
        self.aggregator.record_turn(self.conversation, [
            CitationSource(source_name="A", url="http://rag/A", similarity=0.8),
        ])
        panel = self.aggregator.panel(self.conversation)

        assert panel.animate is False
        assert [i.change for i in panel.items] == [ChangeState.NEW]
        assert panel.items[0].previous_index == -1

    def test_panel_diffs_against_order_before_latest_turn(self):
        self.aggregator.record_turn(self.conversation, [
            CitationSource(source_name="A", url="http://rag/A", similarity=0.8),
            CitationSource(source_name="B", url="http://rag/B", similarity=0.6),
        ])
        self.aggregator.record_turn(self.conversation, [
            CitationSource(source_name="C", url="http://rag/C", similarity=0.9),
        ])
        panel = self.aggregator.panel(self.conversation)

        assert panel.animate is True
        assert [i.source_name for i in panel.items] == ["C", "A", "B"]
        assert [i.change for i in panel.items] == [ChangeState.NEW, ChangeState.FELL, ChangeState.FELL]
        assert [i.previous_index for i in panel.items] == [-1, 0, 1]
        assert panel.removed == []
        assert [c.turn_index for c in self.conversation.citations] == [0, 0, 1]

    def test_panel_reports_removed_entries(self):
        self.conversation.previous_order = [citation_key("Gone", "http://rag/Gone")]
        self.conversation.previous_entries = [
            {"key": citation_key("Gone", "http://rag/Gone"), "source_name": "Gone", "url": "http://rag/Gone"}
        ]
        panel = self.aggregator.panel(self.conversation)

        assert panel.items == []
        assert panel.removed[0]["source_name"] == "Gone"
        assert panel.to_dict()["animate"] is False

    def test_reset_clears_citation_state(self):
        self.aggregator.record_turn(self.conversation, [
            CitationSource(source_name="A", url="http://rag/A", similarity=0.8),
        ])
        self.conversation.reset()

        assert self.conversation.citations == []
        assert self.conversation.citation_turn_index == 0
        assert self.conversation.previous_order == []
