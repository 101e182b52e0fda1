"""
Tests for vector parsing and the pgvector-backed index.
"""
import math
from unittest.mock import patch

import pytest

from agents.matching.vector_index import PgVectorIndex, parse_vector, to_pgvector


class TestParseVector:
    """Tests for reading stored vectors."""

    def test_pgvector_text(self):
        assert parse_vector("[0.1,0.2,0.3]") == [0.1, 0.2, 0.3]

    def test_bare_comma_list(self):
        assert parse_vector("0.5, 1.5") == [0.5, 1.5]

    def test_sequence(self):
        assert parse_vector((1, 2)) == [1.0, 2.0]

    def test_non_finite_entries_dropped(self):
        assert parse_vector([1.0, math.nan, math.inf, 2.0]) == [1.0, 2.0]

    @pytest.mark.parametrize("value", [None, "", "   ", "not a vector", "[]", 42])
    def test_unparseable(self, value):
        assert parse_vector(value) is None


def test_to_pgvector():
    assert to_pgvector([0.5, 1.0]) == "[0.5,1.0]"


@pytest.fixture
def patched_session(mock_db_session):
    with patch("agents.matching.vector_index.Session") as session_cls:
        session_cls.return_value = mock_db_session
        yield mock_db_session


class TestPgVectorIndex:
    """Tests for SQL function calls and row mapping."""

    def test_match_topics(self, mock_db_engine, patched_session, make_row):
        patched_session.execute.return_value.fetchall.return_value = [
            make_row(id="t1", similarity=0.93),
            make_row(id="t2", similarity=1.0000001),
        ]

        matches = PgVectorIndex(mock_db_engine).match_topics([0.1, 0.2], 0.2, 3)

        assert [(m.id, m.similarity) for m in matches] == [("t1", 0.93), ("t2", 1.0)]
        sql, params = patched_session.execute.call_args.args
        assert "match_topics" in str(sql)
        assert params == {"query_embedding": "[0.1,0.2]", "match_threshold": 0.2, "match_count": 3}

    def test_match_knowledge(self, mock_db_engine, patched_session, make_row):
        patched_session.execute.return_value.fetchall.return_value = [
            make_row(id="k1", knowledge_text="graphic design", assigned_human=["p-x"], similarity=0.8),
            make_row(id="k2", knowledge_text=None, assigned_human=None, similarity=None),
        ]

        matches = PgVectorIndex(mock_db_engine).match_knowledge([1.0], ["p-me"], False, 100)

        assert matches[0].text == "graphic design"
        assert matches[0].owner_ids == ["p-x"]
        assert matches[1].text == ""
        assert matches[1].owner_ids == []
        assert matches[1].similarity == 0.0
        sql, params = patched_session.execute.call_args.args
        assert "match_atomic_knowledge" in str(sql)
        assert params["exclude_ids"] == ["p-me"]
        assert params["is_asks_filter"] is False
        assert params["match_count"] == 100

    def test_no_exclusions_passes_null(self, mock_db_engine, patched_session):
        patched_session.execute.return_value.fetchall.return_value = []

        PgVectorIndex(mock_db_engine).match_knowledge([1.0], [], True, 10)

        assert patched_session.execute.call_args.args[1]["exclude_ids"] is None
