"""
Matching Agent Pydantic Models
Data models for the ask/offer matching engine.
"""
from typing import Optional

from pydantic import BaseModel, Field

# Evidence from items that have no persisted atomic knowledge row
SYNTHETIC_ITEM_ID = ""


class KnowledgeItem(BaseModel):
    """
    Atomic knowledge item: a single ask or offer.

    Items created by the extraction pipeline carry their stored id and
    embedding. Items proposed at search time (keyword expansion, synthetic
    augmentation) use SYNTHETIC_ITEM_ID and are embedded on demand.
    """

    id: str = Field(default=SYNTHETIC_ITEM_ID, description="Atomic knowledge id")
    text: str = Field(..., min_length=1, description="Statement text")
    embedding: Optional[list[float]] = Field(
        default=None,
        description="Stored embedding, if already computed",
    )
    is_ask: bool = Field(..., description="True for asks, False for offers")
    topic_ids: list[str] = Field(default_factory=list, description="Assigned topic ids")
    owner_id: Optional[str] = Field(
        default=None,
        description="Human portfolio id of the owner",
    )

    @property
    def is_synthetic(self) -> bool:
        """Whether this item has no persisted knowledge row."""
        return self.id == SYNTHETIC_ITEM_ID


class KnowledgeMatch(BaseModel):
    """Nearest-neighbour hit returned by the vector index for knowledge items."""

    id: str
    text: str
    owner_ids: list[str] = Field(default_factory=list)
    similarity: float = Field(..., ge=0.0, le=1.0)


class TopicMatch(BaseModel):
    """Nearest-neighbour hit returned by the vector index for topics."""

    id: str
    similarity: float = Field(..., ge=0.0, le=1.0)


class CandidateHit(BaseModel):
    """Best match of one searcher statement against one candidate user."""

    user_id: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    matched_statement: str
    matched_statement_id: str


class MatchEvidence(BaseModel):
    """
    Evidence for one searcher statement against one candidate.

    Holds the searcher's statement and the candidate statement that matched
    it best.
    """

    searching_statement: str
    searching_statement_id: str = SYNTHETIC_ITEM_ID
    matched_statement: str
    matched_statement_id: str
    similarity: float = Field(..., ge=0.0, le=1.0)


class TopicEvidence(BaseModel):
    """Topic overlap between the searcher and a candidate, for explanation."""

    searcher_topic_id: str
    searcher_topic_name: str = "Unknown Topic"
    target_topic_id: str
    target_topic_name: str = "Unknown Topic"
    similarity: float = Field(..., ge=0.0, le=1.0)
    multiplier: float = Field(..., ge=1.0)


class DirectionalScores(BaseModel):
    """Per-candidate scores and evidence from one matching direction."""

    scores: dict[str, float] = Field(default_factory=dict)
    evidence: dict[str, list[MatchEvidence]] = Field(default_factory=dict)


class ExpandedTopics(BaseModel):
    """
    Result of topic expansion.

    `similarities` drives scoring; `sources` and `reached` exist only to
    explain which searcher topic led to which expanded topic.
    """

    similarities: dict[str, float] = Field(default_factory=dict)
    sources: dict[str, str] = Field(default_factory=dict)
    reached: dict[str, dict[str, float]] = Field(default_factory=dict)


class TopicMultipliers(BaseModel):
    """Topical interest multipliers and their evidence, per candidate."""

    multipliers: dict[str, float] = Field(default_factory=dict)
    evidence: dict[str, list[TopicEvidence]] = Field(default_factory=dict)


class MatchBreakdown(BaseModel):
    """Final scores of a no-keyword search with the parts that produced them."""

    scores: dict[str, float] = Field(default_factory=dict)
    forward: DirectionalScores = Field(default_factory=DirectionalScores)
    backward: DirectionalScores = Field(default_factory=DirectionalScores)
    topics: TopicMultipliers = Field(default_factory=TopicMultipliers)


class MatchResult(BaseModel):
    """One ranked candidate with its full evidence."""

    candidate_user_id: str
    final_score: float = Field(..., ge=0.0)
    forward_evidence: list[MatchEvidence] = Field(default_factory=list)
    backward_evidence: list[MatchEvidence] = Field(default_factory=list)
    topic_evidence: list[TopicEvidence] = Field(default_factory=list)
    specific_evidence: list[MatchEvidence] = Field(
        default_factory=list,
        description="Forward evidence from keyword-generated asks",
    )


class SearchResult(BaseModel):
    """Ranked output of one search request."""

    user_id: str
    keyword: Optional[str] = None
    results: list[MatchResult] = Field(default_factory=list)

    @property
    def scores(self) -> dict[str, float]:
        """Final score per candidate user."""
        return {r.candidate_user_id: r.final_score for r in self.results}


class ProfileContext(BaseModel):
    """Profile and project text used to suggest missing asks and offers."""

    description: str = ""
    project_summaries: list[str] = Field(default_factory=list)


class Topic(BaseModel):
    """Shared semantic category."""

    id: str
    name: str
    description: Optional[str] = None
    mention_count: int = 0


class InterestScore(BaseModel):
    """A user's interest in a topic, as reported by the ledger."""

    topic: Topic
    memory_score: float
    aggregate_score: float
