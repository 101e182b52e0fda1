"""
Match Search Pipeline
Runs a full search request: load the searcher's asks and offers, match in
both directions, weight by topical interest, and rank candidates.
"""
from typing import Mapping, Optional, Sequence

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.core.config import settings

from .embeddings import EmbeddingProvider
from .interests import InterestLedger
from .knowledge import KnowledgeRepository
from .matcher import KnowledgeMatcher
from .models import (
    DirectionalScores,
    ExpandedTopics,
    KnowledgeItem,
    MatchBreakdown,
    MatchResult,
    SearchResult,
    TopicEvidence,
    TopicMultipliers,
)
from .query_expander import KeywordQueryExpander, MissingItemSuggester
from .scoring import (
    apply_multipliers,
    combine_directional_scores,
    combine_search_scores,
    topic_multiplier,
)
from .topics import TopicExpander
from .vector_index import PgVectorIndex, VectorIndex

logger = structlog.get_logger().bind(agent="match_search")

UNKNOWN_TOPIC = "Unknown Topic"


def build_topic_multipliers(
    expanded: ExpandedTopics,
    interests: Mapping[str, set[str]],
    candidate_ids: Sequence[str],
    topic_names: Optional[Mapping[str, str]] = None,
) -> TopicMultipliers:
    """
    Compute topic multipliers and topic evidence for candidates.

    A candidate's multiplier is sqrt(sum + 1), where the sum runs over the
    expanded topics the candidate holds an interest row on, each counted at
    its best expanded similarity. Evidence pairs each such topic with every
    searcher topic that reached it, at that source's own similarity.

    Args:
        expanded: Expanded searcher topics.
        interests: Candidate user id -> topic ids with an interest row.
        candidate_ids: Candidates with a base score.
        topic_names: Topic id -> name, for evidence.

    Returns:
        TopicMultipliers; candidates without matching interests get 1.0.
    """
    topic_names = topic_names or {}
    multipliers: dict[str, float] = {}
    evidence: dict[str, list[TopicEvidence]] = {}

    for user_id in candidate_ids:
        matched = sorted(
            t for t in interests.get(user_id, set())
            if expanded.similarities.get(t, 0.0) > 0
        )
        multiplier = topic_multiplier(expanded.similarities[t] for t in matched)
        multipliers[user_id] = multiplier

        entries = []
        for target_id in matched:
            for searcher_topic_id, reach in expanded.reached.items():
                similarity = reach.get(target_id, 0.0)
                if similarity <= 0:
                    continue
                entries.append(
                    TopicEvidence(
                        searcher_topic_id=searcher_topic_id,
                        searcher_topic_name=topic_names.get(searcher_topic_id, UNKNOWN_TOPIC),
                        target_topic_id=target_id,
                        target_topic_name=topic_names.get(target_id, UNKNOWN_TOPIC),
                        similarity=similarity,
                        multiplier=multiplier,
                    )
                )

        if entries:
            entries.sort(key=lambda e: e.similarity, reverse=True)
            evidence[user_id] = entries

    return TopicMultipliers(multipliers=multipliers, evidence=evidence)


def rank_results(
    scores: Mapping[str, float],
    general: MatchBreakdown,
    specific: Optional[DirectionalScores] = None,
    limit: Optional[int] = None,
) -> list[MatchResult]:
    """Order candidates by score, highest first, attaching their evidence."""
    ordered = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
    if limit is not None:
        ordered = ordered[:limit]

    return [
        MatchResult(
            candidate_user_id=user_id,
            final_score=score,
            forward_evidence=general.forward.evidence.get(user_id, []),
            backward_evidence=general.backward.evidence.get(user_id, []),
            topic_evidence=general.topics.evidence.get(user_id, []),
            specific_evidence=specific.evidence.get(user_id, []) if specific else [],
        )
        for user_id, score in ordered
    ]


class MatchSearchService:
    """
    Orchestrates one search request.

    Build a service per request: its embedding provider caches vectors for
    the lifetime of the request only.
    """

    def __init__(
        self,
        db_engine: Engine,
        embedding_provider: Optional[EmbeddingProvider] = None,
        vector_index: Optional[VectorIndex] = None,
        knowledge_repository: Optional[KnowledgeRepository] = None,
        interest_ledger: Optional[InterestLedger] = None,
        keyword_expander: Optional[KeywordQueryExpander] = None,
        suggester: Optional[MissingItemSuggester] = None,
        augment: Optional[bool] = None,
    ):
        self.db_engine = db_engine
        self.embedding_provider = embedding_provider or EmbeddingProvider()
        self.vector_index = vector_index or PgVectorIndex(db_engine)
        self.knowledge_repository = knowledge_repository or KnowledgeRepository(db_engine)
        self.interest_ledger = interest_ledger or InterestLedger(db_engine)
        self.keyword_expander = keyword_expander or KeywordQueryExpander()
        self.suggester = suggester or MissingItemSuggester()
        self.augment = settings.enable_synthetic_augmentation if augment is None else augment

        self.matcher = KnowledgeMatcher(
            vector_index=self.vector_index,
            embedding_provider=self.embedding_provider,
            knowledge_repository=self.knowledge_repository,
        )
        self.topic_expander = TopicExpander(db_engine, self.vector_index)

    def augment_items(
        self,
        user_id: str,
        asks: list[KnowledgeItem],
        offers: list[KnowledgeItem],
    ) -> tuple[list[KnowledgeItem], list[KnowledgeItem]]:
        """
        Append suggested missing asks and offers as synthetic items.

        Any failure leaves the user's own items unchanged.
        """
        try:
            profile = self.knowledge_repository.get_profile_context(user_id)
            new_asks, new_offers = self.suggester.suggest(profile, asks, offers)
        except Exception as e:
            logger.error("augmentation_failed", user_id=user_id, error=str(e), error_type=type(e).__name__)
            return asks, offers
        return asks + new_asks, offers + new_offers

    def compute_topic_multipliers(
        self,
        searcher_topic_ids: Sequence[str],
        candidate_ids: Sequence[str],
    ) -> TopicMultipliers:
        """
        Expand the searcher's topics and weight candidates by their interests.

        If candidate interests cannot be loaded, every multiplier is 1.0.
        """
        neutral = TopicMultipliers(multipliers={uid: 1.0 for uid in candidate_ids})
        if not searcher_topic_ids or not candidate_ids:
            return neutral

        expanded = self.topic_expander.expand(searcher_topic_ids)
        if not expanded.similarities:
            return neutral

        try:
            interests = self.interest_ledger.get_interest_topics(
                candidate_ids, list(expanded.similarities)
            )
        except SQLAlchemyError as e:
            logger.error("candidate_interests_fetch_failed", candidates=len(candidate_ids), error=str(e))
            return neutral

        named_ids = set(expanded.reached)
        for topic_ids in interests.values():
            named_ids.update(topic_ids)
        topic_names = self.topic_expander.get_topic_names(sorted(named_ids))

        result = build_topic_multipliers(expanded, interests, candidate_ids, topic_names)

        logger.info(
            "topic_multipliers_computed",
            candidates=len(candidate_ids),
            candidates_with_topic_match=len(result.evidence),
        )

        return result

    def perform_match_search(self, user_id: str) -> MatchBreakdown:
        """
        No-keyword search over the searcher's own asks and offers.

        final = forward * sqrt(1 + backward) * sqrt(sum(topic similarity) + 1)

        Args:
            user_id: Searching user.

        Returns:
            MatchBreakdown; empty if the user has no human portfolio.
        """
        searcher_portfolio_id = self.knowledge_repository.get_human_portfolio_id(user_id)
        if not searcher_portfolio_id:
            logger.info("searcher_identity_missing", user_id=user_id)
            return MatchBreakdown()

        asks = self.knowledge_repository.get_user_asks(user_id)
        offers = self.knowledge_repository.get_user_offers(user_id)
        if self.augment:
            asks, offers = self.augment_items(user_id, asks, offers)

        forward = self.matcher.calculate_forward_scores(asks, searcher_portfolio_id)
        backward = self.matcher.calculate_backward_scores(offers, searcher_portfolio_id)
        base_scores = combine_directional_scores(forward.scores, backward.scores)

        searcher_topic_ids = list(dict.fromkeys(
            topic_id for item in asks + offers for topic_id in item.topic_ids if topic_id
        ))
        topics = self.compute_topic_multipliers(searcher_topic_ids, list(base_scores))
        final_scores = apply_multipliers(base_scores, topics.multipliers)

        logger.info(
            "match_search_complete",
            user_id=user_id,
            asks=len(asks),
            offers=len(offers),
            searcher_topics=len(searcher_topic_ids),
            candidates=len(final_scores),
        )

        return MatchBreakdown(
            scores=final_scores,
            forward=forward,
            backward=backward,
            topics=topics,
        )

    def perform_specific_search(self, user_id: str, keyword: str) -> DirectionalScores:
        """
        Keyword search: forward-match synthetic asks generated from the keyword.

        Returns:
            DirectionalScores; empty if no asks were generated or the user
            has no human portfolio.
        """
        searcher_portfolio_id = self.knowledge_repository.get_human_portfolio_id(user_id)
        if not searcher_portfolio_id:
            logger.info("searcher_identity_missing", user_id=user_id)
            return DirectionalScores()

        asks = [KnowledgeItem(text=t, is_ask=True) for t in self.keyword_expander.expand(keyword)]
        if not asks:
            return DirectionalScores()

        return self.matcher.calculate_forward_scores(asks, searcher_portfolio_id)

    def search(
        self,
        user_id: str,
        keyword: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> SearchResult:
        """
        Rank all other users for the searcher.

        With a keyword, ranking uses 0.8 * specific + 0.2 * general over the
        union of candidates from both searches.

        Args:
            user_id: Searching user.
            keyword: Optional search keyword.
            limit: Maximum number of results.

        Returns:
            SearchResult ordered by score, highest first.

        Raises:
            ValueError: If limit is negative.
        """
        if limit is not None and limit < 0:
            raise ValueError("limit must not be negative")

        user_id = str(user_id)
        keyword = (keyword or "").strip() or None

        general = self.perform_match_search(user_id)
        specific = None
        scores = general.scores

        if keyword:
            specific = self.perform_specific_search(user_id, keyword)
            scores = combine_search_scores(specific.scores, general.scores)

        return SearchResult(
            user_id=user_id,
            keyword=keyword,
            results=rank_results(scores, general, specific, limit),
        )
