"""
Tests for the knowledge repository.
"""
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from agents.matching.knowledge import KnowledgeRepository


@pytest.fixture
def patched_session(mock_db_session):
    with patch("agents.matching.knowledge.Session") as session_cls:
        session_cls.return_value = mock_db_session
        yield mock_db_session


@pytest.fixture
def repository(mock_db_engine):
    return KnowledgeRepository(mock_db_engine)


class TestHumanPortfolio:
    """Tests for identity lookup."""

    def test_found(self, repository, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(id="p-1")
        assert repository.get_human_portfolio_id("u1") == "p-1"

    def test_missing(self, repository, patched_session):
        patched_session.execute.return_value.fetchone.return_value = None
        assert repository.get_human_portfolio_id("u1") is None

    def test_database_error(self, repository, patched_session):
        patched_session.execute.side_effect = SQLAlchemyError("timeout")
        assert repository.get_human_portfolio_id("u1") is None


class TestUserKnowledge:
    """Tests for loading asks and offers."""

    def test_asks_with_embeddings(self, repository, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(id="p-1")
        patched_session.execute.return_value.fetchall.return_value = [
            make_row(id="k1", knowledge_text="Need a designer", knowledge_vector="[0.1,0.2]", topics=["t1", None]),
            make_row(id="k2", knowledge_text="Need a lawyer", knowledge_vector="garbage", topics=None),
            make_row(id="k3", knowledge_text="", knowledge_vector=[0.3], topics=None),
        ]

        asks = repository.get_user_asks("u1")

        assert len(asks) == 1
        assert asks[0].id == "k1"
        assert asks[0].embedding == [0.1, 0.2]
        assert asks[0].topic_ids == ["t1"]
        assert asks[0].is_ask is True
        assert asks[0].owner_id == "p-1"
        params = patched_session.execute.call_args.args[1]
        assert params == {"is_ask": True, "portfolio_id": "p-1"}

    def test_offers_query_non_asks(self, repository, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(id="p-1")
        patched_session.execute.return_value.fetchall.return_value = []

        assert repository.get_user_offers("u1") == []
        assert patched_session.execute.call_args.args[1]["is_ask"] is False

    def test_no_identity_means_no_knowledge(self, repository, patched_session):
        patched_session.execute.return_value.fetchone.return_value = None
        assert repository.get_user_asks("u1") == []
        assert patched_session.execute.call_count == 1


class TestResolvePortfolioOwners:
    """Tests for portfolio -> user resolution."""

    def test_maps_known_portfolios(self, repository, patched_session, make_row):
        patched_session.execute.return_value.fetchall.return_value = [
            make_row(id="p-1", user_id="u1"),
            make_row(id="p-2", user_id=None),
        ]

        assert repository.resolve_portfolio_owners(["p-1", "p-2", "p-1"]) == {"p-1": "u1"}
        assert patched_session.execute.call_args.args[1] == {"portfolio_ids": ["p-1", "p-2"]}

    def test_empty(self, repository):
        assert repository.resolve_portfolio_owners([]) == {}

    def test_database_error_propagates(self, repository, patched_session):
        patched_session.execute.side_effect = SQLAlchemyError("timeout")
        with pytest.raises(SQLAlchemyError):
            repository.resolve_portfolio_owners(["p-1"])


class TestProfileContext:
    """Tests for profile and project summaries."""

    def test_collects_description_and_projects(self, repository, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(
            metadata={"basic": {"description": " Brand designer "}},
        )
        patched_session.execute.return_value.fetchall.return_value = [
            make_row(id="pr1", user_id="u1", metadata={"basic": {"name": "Studio", "description": "Brand work"}}),
            make_row(id="pr2", user_id="u2", metadata={}),
        ]

        context = repository.get_profile_context("u1")

        assert context.description == "Brand designer"
        assert context.project_summaries == [
            "Project: Studio\nDescription: Brand work",
            "Project: Unnamed Project\nDescription: ",
        ]

    def test_database_error_gives_empty_context(self, repository, patched_session):
        patched_session.execute.side_effect = SQLAlchemyError("timeout")
        context = repository.get_profile_context("u1")
        assert context.description == ""
        assert context.project_summaries == []
