"""
Citation ranking for the "relevant resources" panel.

Citations recorded across turns are grouped per source, scored on strength
(best similarity), frequency (times retrieved) and recency (retrieved on the
latest RAG turn), and ordered by score. The order shown last time is diffed
positionally against the current order to drive rise/fall/new/same markers.
Groups are always recomputed from the full citation list.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from app.models import Citation, CitationSource, Conversation
from app.logging_config import get_logger

logger = get_logger(__name__)

KEY_SEPARATOR = "\0"
MIN_OPACITY = 0.4
OPACITY_RANGE = 0.6


class ChangeState(str, Enum):
    NEW = "new"
    ROSE = "rose"
    FELL = "fell"
    SAME = "same"


@dataclass
class CitationGroup:
    """All citations of one source (identity: source_name + url)."""
    key: str
    source_name: str
    url: str
    count: int = 0
    max_turn_in_group: int = -1
    max_similarity: Optional[float] = None
    score: float = 0.0


@dataclass
class PanelItem:
    key: str
    source_name: str
    url: str
    score: float
    opacity: float
    change: ChangeState
    index: int
    previous_index: int  # -1 when new

    def to_dict(self) -> Dict:
        return {
            "key": self.key,
            "source_name": self.source_name,
            "url": self.url,
            "score": self.score,
            "opacity": self.opacity,
            "change": self.change.value,
            "index": self.index,
            "previous_index": self.previous_index,
        }


@dataclass
class CitationPanel:
    items: List[PanelItem] = field(default_factory=list)
    removed: List[Dict] = field(default_factory=list)  # previously shown entries no longer present
    animate: bool = False  # True when a previous order exists to animate from

    def to_dict(self) -> Dict:
        return {
            "items": [item.to_dict() for item in self.items],
            "removed": self.removed,
            "animate": self.animate,
        }


def citation_key(source_name: str, url: str) -> str:
    return f"{source_name}{KEY_SEPARATOR}{url}"


def group_citations(citations: List[Citation]) -> Tuple[List[CitationGroup], int]:
    """
    Group citations by identity key.

    Returns:
        (groups in first-seen order, highest turn index seen or -1)
    """
    groups: Dict[str, CitationGroup] = {}
    max_turn_index = -1

    for c in citations:
        url = c.url or "#"
        turn_index = c.turn_index if isinstance(c.turn_index, int) else -1
        similarity = c.similarity if isinstance(c.similarity, (int, float)) else None
        max_turn_index = max(max_turn_index, turn_index)

        key = citation_key(str(c.source_name), str(url))
        group = groups.get(key)
        if group is None:
            group = CitationGroup(key=key, source_name=c.source_name, url=url)
            groups[key] = group

        group.count += 1
        group.max_turn_in_group = max(group.max_turn_in_group, turn_index)
        if similarity is not None and (group.max_similarity is None or similarity > group.max_similarity):
            group.max_similarity = similarity

    return list(groups.values()), max_turn_index


def rank_citations(citations: List[Citation]) -> List[CitationGroup]:
    """
    Score and order citation groups.

    score = (strength + frequency + recency) / 3, where strength is the
    group's best similarity over the global best, frequency its count over
    the highest count, and recency 1 if it was retrieved on the latest turn.
    Equal scores are ordered by identity key.
    """
    groups, max_turn_index = group_citations(citations)
    if not groups:
        return []

    max_count = max(1, max(g.count for g in groups))
    max_similarity = max(0.0, max(g.max_similarity or 0.0 for g in groups))

    for g in groups:
        strength = (g.max_similarity or 0.0) / max_similarity if max_similarity > 0 else 0.0
        frequency = g.count / max_count
        recency = 1.0 if max_turn_index >= 0 and g.max_turn_in_group == max_turn_index else 0.0
        g.score = (strength + frequency + recency) / 3

    return sorted(groups, key=lambda g: (-g.score, g.key))


def diff_order(previous_keys: List[str], ranked: List[CitationGroup]) -> Dict[str, ChangeState]:
    """Positional change of each ranked group relative to the previously shown order."""
    previous_index = {key: i for i, key in enumerate(previous_keys)}
    changes = {}
    for i, group in enumerate(ranked):
        prev = previous_index.get(group.key)
        if prev is None:
            changes[group.key] = ChangeState.NEW
        elif i < prev:
            changes[group.key] = ChangeState.ROSE
        elif i > prev:
            changes[group.key] = ChangeState.FELL
        else:
            changes[group.key] = ChangeState.SAME
    return changes


def emphasis(ranked: List[CitationGroup]) -> Dict[str, float]:
    """Display opacity per group: 0.4 + 0.6 * score / best score."""
    if not ranked:
        return {}
    max_score = max(max(g.score for g in ranked), 1e-6)
    return {g.key: MIN_OPACITY + OPACITY_RANGE * (g.score / max_score) for g in ranked}


class CitationAggregator:
    """
    Records per-turn citations on a conversation and builds the panel view.

    The conversation object is the only state; nothing is cached here.
    """

    def record_turn(self, conversation: Conversation, sources: List[CitationSource]) -> int:
        """
        Append one citation per source for a new RAG turn.

        The currently ranked order is snapshotted first, so the next panel
        shows movement caused by this turn's results.

        Returns:
            The turn index assigned, or -1 if there were no sources
        """
        if not sources:
            return -1

        ranked = rank_citations(conversation.citations)
        conversation.previous_order = [g.key for g in ranked]
        conversation.previous_entries = [
            {"key": g.key, "source_name": g.source_name, "url": g.url} for g in ranked
        ]

        turn_index = conversation.citation_turn_index
        for source in sources:
            conversation.citations.append(Citation(
                source_name=source.source_name,
                url=source.url,
                turn_index=turn_index,
                similarity=source.similarity
            ))
        conversation.citation_turn_index = turn_index + 1

        logger.info(f"Recorded {len(sources)} citations for turn {turn_index} (total: {len(conversation.citations)})")
        return turn_index


    def panel(self, conversation: Conversation) -> CitationPanel:
        """Ranked groups with change markers, indexes and opacity."""
        ranked = rank_citations(conversation.citations)
        changes = diff_order(conversation.previous_order, ranked)
        opacity = emphasis(ranked)
        previous_index = {key: i for i, key in enumerate(conversation.previous_order)}

        items = [
            PanelItem(
                key=g.key,
                source_name=g.source_name,
                url=g.url,
                score=g.score,
                opacity=opacity[g.key],
                change=changes[g.key],
                index=i,
                previous_index=previous_index.get(g.key, -1)
            )
            for i, g in enumerate(ranked)
        ]

        current_keys = {g.key for g in ranked}
        removed = [e for e in conversation.previous_entries if e["key"] not in current_keys]

        return CitationPanel(items=items, removed=removed, animate=bool(conversation.previous_order) and bool(items))
