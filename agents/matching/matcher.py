"""
Knowledge Matcher
Forward (asks -> offers) and backward (offers -> asks) candidate scoring.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence

import structlog

from backend.core.config import settings

from .embeddings import EmbeddingProvider
from .knowledge import KnowledgeRepository
from .models import (
    CandidateHit,
    DirectionalScores,
    KnowledgeItem,
    KnowledgeMatch,
    MatchEvidence,
)
from .scoring import directional_score
from .vector_index import VectorIndex

logger = structlog.get_logger().bind(agent="matcher")


def best_hits_per_user(
    matches: Sequence[KnowledgeMatch],
    owners: dict[str, str],
) -> list[CandidateHit]:
    """
    Reduce raw index hits to one best hit per candidate user.

    Args:
        matches: Hits for one searcher statement.
        owners: Portfolio id -> user id.

    Returns:
        Best hit per user; hits whose owners cannot be resolved are dropped.
    """
    best: dict[str, CandidateHit] = {}
    for match in matches:
        for portfolio_id in match.owner_ids:
            user_id = owners.get(portfolio_id)
            if not user_id:
                continue
            existing = best.get(user_id)
            if existing is None or match.similarity > existing.similarity:
                best[user_id] = CandidateHit(
                    user_id=user_id,
                    similarity=match.similarity,
                    matched_statement=match.text,
                    matched_statement_id=match.id,
                )
    return list(best.values())


def aggregate_hits(
    per_item_hits: Sequence[tuple[KnowledgeItem, Sequence[CandidateHit]]],
) -> DirectionalScores:
    """
    Fold per-statement hits into per-candidate scores and evidence.

    Uses only max and sum, so the order of items does not affect scores.
    Evidence keeps one entry per distinct statement text with the best hit.

    Args:
        per_item_hits: (searcher statement, its best hit per user) pairs.

    Returns:
        DirectionalScores for every candidate hit at least once.
    """
    similarities: dict[str, list[float]] = {}
    evidence: dict[str, dict[str, MatchEvidence]] = {}

    for item, hits in per_item_hits:
        for hit in hits:
            similarities.setdefault(hit.user_id, []).append(hit.similarity)

            user_evidence = evidence.setdefault(hit.user_id, {})
            existing = user_evidence.get(item.text)
            if existing is None or hit.similarity > existing.similarity:
                user_evidence[item.text] = MatchEvidence(
                    searching_statement=item.text,
                    searching_statement_id=item.id,
                    matched_statement=hit.matched_statement,
                    matched_statement_id=hit.matched_statement_id,
                    similarity=hit.similarity,
                )

    return DirectionalScores(
        scores={user_id: directional_score(sims) for user_id, sims in similarities.items()},
        evidence={user_id: list(entries.values()) for user_id, entries in evidence.items()},
    )


class KnowledgeMatcher:
    """
    Matches a searcher's statements against other users' statements.

    Forward matching sends the searcher's asks against everyone else's
    offers; backward matching sends offers against asks. Each statement is
    one embedding lookup plus one vector index query, issued on a bounded
    thread pool. A failed lookup contributes no hits.
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        embedding_provider: EmbeddingProvider,
        knowledge_repository: KnowledgeRepository,
        match_count: Optional[int] = None,
        max_workers: Optional[int] = None,
    ):
        """
        Initialize matcher.

        Args:
            vector_index: Nearest-neighbour index.
            embedding_provider: Embeds statements lacking a stored vector.
            knowledge_repository: Resolves portfolio owners.
            match_count: Top-N index hits per statement.
            max_workers: Maximum concurrent lookups.
        """
        self.vector_index = vector_index
        self.embedding_provider = embedding_provider
        self.knowledge_repository = knowledge_repository
        self.match_count = match_count or settings.knowledge_match_count
        self.max_workers = max_workers or settings.match_max_workers

    def search_item(
        self,
        item: KnowledgeItem,
        exclude_owner_ids: Sequence[str],
    ) -> list[CandidateHit]:
        """
        Find the best opposite-side statement per candidate for one statement.

        Asks are matched against offers and offers against asks.

        Args:
            item: Searcher statement.
            exclude_owner_ids: Portfolio ids whose items must not match.

        Returns:
            Best hit per candidate user.
        """
        embedding = item.embedding or self.embedding_provider.embed(item.text)

        matches = self.vector_index.match_knowledge(
            embedding,
            exclude_owner_ids=exclude_owner_ids,
            is_ask=not item.is_ask,
            max_results=self.match_count,
        )
        if not matches:
            return []

        owner_ids = [owner for match in matches for owner in match.owner_ids]
        owners = self.knowledge_repository.resolve_portfolio_owners(owner_ids)
        return best_hits_per_user(matches, owners)

    def _search_item_safe(
        self,
        item: KnowledgeItem,
        exclude_owner_ids: Sequence[str],
    ) -> list[CandidateHit]:
        try:
            return self.search_item(item, exclude_owner_ids)
        except Exception as e:
            logger.error(
                "statement_search_failed",
                statement_id=item.id,
                is_ask=item.is_ask,
                error=str(e),
                error_type=type(e).__name__,
            )
            return []

    def calculate_scores(
        self,
        items: Sequence[KnowledgeItem],
        searcher_portfolio_id: str,
    ) -> DirectionalScores:
        """
        Score all candidates for a list of searcher statements.

        Args:
            items: Searcher statements, all asks or all offers.
            searcher_portfolio_id: Searcher identity, excluded from results.

        Returns:
            Per-candidate scores (0.8 * max + 0.2 * average) and evidence.
        """
        if not items:
            return DirectionalScores()

        exclude = [searcher_portfolio_id]
        workers = max(1, min(self.max_workers, len(items)))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            hit_lists = list(pool.map(lambda item: self._search_item_safe(item, exclude), items))

        result = aggregate_hits(list(zip(items, hit_lists)))

        logger.info(
            "directional_match_complete",
            statements=len(items),
            candidates_found=len(result.scores),
        )

        return result

    def calculate_forward_scores(
        self,
        asks: Sequence[KnowledgeItem],
        searcher_portfolio_id: str,
    ) -> DirectionalScores:
        """Forward match: searcher asks against other users' offers."""
        return self.calculate_scores([a for a in asks if a.is_ask], searcher_portfolio_id)

    def calculate_backward_scores(
        self,
        offers: Sequence[KnowledgeItem],
        searcher_portfolio_id: str,
    ) -> DirectionalScores:
        """Backward match: searcher offers against other users' asks."""
        return self.calculate_scores([o for o in offers if not o.is_ask], searcher_portfolio_id)
