"""
Tests for the interest ledger and portfolio interest processing.
"""
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from agents.matching.interests import InterestLedger, PortfolioInterestProcessor


def _executed_sql(session) -> list[str]:
    return [str(c.args[0]) for c in session.execute.call_args_list]


def _decay_updates(session) -> list[dict]:
    """Parameters of manual per-row decay writes."""
    return [
        c.args[1] for c in session.execute.call_args_list
        if "SET memory_score = :memory_score" in str(c.args[0])
    ]


@pytest.fixture
def patched_session(mock_db_session):
    with patch("agents.matching.interests.Session") as session_cls:
        session_cls.return_value = mock_db_session
        yield mock_db_session


def _failing_bulk_decay(rows, manual_fails=False):
    """execute() side effect where the bulk decay function is unavailable."""

    def execute(statement, params=None):
        sql = str(statement)
        if "decay_user_memory_scores" in sql:
            raise SQLAlchemyError("function does not exist")
        if manual_fails and "FROM user_interests" in sql:
            raise SQLAlchemyError("permission denied")
        result = MagicMock()
        result.fetchall.return_value = rows
        return result

    return execute


class TestUpdateUserInterests:
    """Tests for decay followed by contribution."""

    def test_bulk_decay_then_contribution(self, mock_db_engine, patched_session):
        ledger = InterestLedger(mock_db_engine, memory_floor=None)

        assert ledger.update_user_interests("u1", ["t1", "t2"], 3.0) is True

        sql = _executed_sql(patched_session)
        assert "pg_advisory_xact_lock" in sql[0]
        assert "decay_user_memory_scores" in sql[1]
        inserts = [c.args[1] for c in patched_session.execute.call_args_list if "INSERT INTO user_interests" in str(c.args[0])]
        assert inserts == [
            {"user_id": "u1", "topic_id": "t1", "weight": 3.0},
            {"user_id": "u1", "topic_id": "t2", "weight": 3.0},
        ]
        patched_session.commit.assert_called_once()

    def test_bulk_decay_clamps_only_decayed_rows(self, mock_db_engine, patched_session, make_row):
        """Rows the decay pushes below the floor are clamped; older negatives are left alone."""
        patched_session.execute.return_value.fetchall.return_value = [make_row(id=7)]
        ledger = InterestLedger(mock_db_engine, memory_floor=0.0)

        ledger.update_user_interests("u1", [], 0.1)

        sql = _executed_sql(patched_session)
        select_index = next(i for i, s in enumerate(sql) if "memory_score - :decay_amount < :memory_floor" in s)
        decay_index = next(i for i, s in enumerate(sql) if "decay_user_memory_scores" in s)
        assert select_index < decay_index
        assert "memory_score > 0" in sql[select_index]

        clamp = [
            c.args[1] for c in patched_session.execute.call_args_list
            if "SET memory_score = :memory_floor" in str(c.args[0])
        ]
        assert clamp == [[{"memory_floor": 0.0, "id": 7}]]

    def test_bulk_decay_without_overshoot_skips_clamp(self, mock_db_engine, patched_session):
        patched_session.execute.return_value.fetchall.return_value = []
        ledger = InterestLedger(mock_db_engine, memory_floor=0.0)

        ledger.update_user_interests("u1", [], 0.1)

        assert not any("SET memory_score = :memory_floor" in s for s in _executed_sql(patched_session))

    def test_decay_runs_without_topics(self, mock_db_engine, patched_session):
        ledger = InterestLedger(mock_db_engine)

        assert ledger.update_user_interests("u1", [], 0.1) is True

        sql = _executed_sql(patched_session)
        assert any("decay_user_memory_scores" in s for s in sql)
        assert not any("INSERT INTO user_interests" in s for s in sql)
        patched_session.commit.assert_called_once()

    def test_upsert_adds_to_both_scores(self, mock_db_engine, patched_session):
        InterestLedger(mock_db_engine).update_user_interests("u1", ["t1"], 0.1)

        insert = next(s for s in _executed_sql(patched_session) if "INSERT INTO user_interests" in s)
        assert "aggregate_score = user_interests.aggregate_score + EXCLUDED.aggregate_score" in insert
        assert "memory_score = user_interests.memory_score + EXCLUDED.memory_score" in insert

    def test_manual_fallback_decays_positive_rows(self, mock_db_engine, patched_session, make_row):
        patched_session.execute.side_effect = _failing_bulk_decay([
            make_row(id=1, memory_score=3.0),
            make_row(id=2, memory_score=0.0),
            make_row(id=3, memory_score=-0.2),
        ])
        ledger = InterestLedger(mock_db_engine, memory_floor=None)

        assert ledger.update_user_interests("u1", ["t1"], 0.1) is True

        updates = _decay_updates(patched_session)
        assert len(updates) == 1
        assert updates[0]["id"] == 1
        assert updates[0]["memory_score"] == pytest.approx(2.9)
        patched_session.commit.assert_called_once()

    def test_decay_below_zero_without_floor(self, mock_db_engine, patched_session, make_row):
        """With clamping disabled, 0.05 decays to -0.05."""
        patched_session.execute.side_effect = _failing_bulk_decay([make_row(id=1, memory_score=0.05)])
        ledger = InterestLedger(mock_db_engine, memory_floor=None)

        ledger.update_user_interests("u1", [], 0.1)

        assert _decay_updates(patched_session)[0]["memory_score"] == pytest.approx(-0.05)

    def test_decay_clamped_at_default_floor(self, mock_db_engine, patched_session, make_row):
        """With the default floor, 0.05 decays to 0.0."""
        patched_session.execute.side_effect = _failing_bulk_decay([make_row(id=1, memory_score=0.05)])
        ledger = InterestLedger(mock_db_engine)

        ledger.update_user_interests("u1", [], 0.1)

        assert _decay_updates(patched_session)[0]["memory_score"] == 0.0

    def test_abandoned_when_both_decays_fail(self, mock_db_engine, patched_session):
        patched_session.execute.side_effect = _failing_bulk_decay([], manual_fails=True)
        ledger = InterestLedger(mock_db_engine)

        assert ledger.update_user_interests("u1", ["t1"], 3.0) is False

        assert not any("INSERT INTO user_interests" in s for s in _executed_sql(patched_session))
        patched_session.rollback.assert_called_once()
        patched_session.commit.assert_not_called()

    def test_lock_failure_returns_false(self, mock_db_engine, patched_session):
        patched_session.execute.side_effect = SQLAlchemyError("connection reset")
        assert InterestLedger(mock_db_engine).update_user_interests("u1", ["t1"], 3.0) is False

    def test_negative_weight_rejected(self, mock_db_engine):
        with pytest.raises(ValueError):
            InterestLedger(mock_db_engine).update_user_interests("u1", ["t1"], -1.0)

    def test_note_interests_use_note_weight(self, mock_db_engine):
        ledger = InterestLedger(mock_db_engine)
        ledger.update_user_interests = MagicMock(return_value=True)

        assert ledger.record_note_interests("u1", ["t1"]) is True

        ledger.update_user_interests.assert_called_once_with("u1", ["t1"], 0.1)


class TestTopInterestedTopics:
    """Tests for reading top interests."""

    def test_returns_topics_with_scores(self, mock_db_engine, patched_session, make_row):
        patched_session.execute.return_value.fetchall.return_value = [
            make_row(topic_id="t1", name="Design", description="Visual design", mention_count=4,
                     memory_score=2.9, aggregate_score=6.0),
            make_row(topic_id="t2", name="Rust", description=None, mention_count=None,
                     memory_score=0.1, aggregate_score=0.1),
        ]

        interests = InterestLedger(mock_db_engine).get_top_interested_topics("u1")

        assert [i.topic.id for i in interests] == ["t1", "t2"]
        assert interests[0].memory_score == 2.9
        assert interests[0].aggregate_score == 6.0
        assert interests[1].topic.mention_count == 0
        params = patched_session.execute.call_args.args[1]
        assert params == {"user_id": "u1", "limit": 5}
        assert "ORDER BY ui.memory_score DESC" in str(patched_session.execute.call_args.args[0])

    def test_negative_limit_rejected(self, mock_db_engine):
        with pytest.raises(ValueError):
            InterestLedger(mock_db_engine).get_top_interested_topics("u1", limit=-1)

    def test_zero_limit(self, mock_db_engine):
        assert InterestLedger(mock_db_engine).get_top_interested_topics("u1", limit=0) == []

    def test_failure_returns_empty(self, mock_db_engine, patched_session):
        patched_session.execute.side_effect = SQLAlchemyError("boom")
        assert InterestLedger(mock_db_engine).get_top_interested_topics("u1") == []


class TestInterestTopics:
    """Tests for candidate interest lookups."""

    def test_groups_by_user(self, mock_db_engine, patched_session, make_row):
        patched_session.execute.return_value.fetchall.return_value = [
            make_row(user_id="x", topic_id="t1"),
            make_row(user_id="x", topic_id="t2"),
            make_row(user_id="y", topic_id="t1"),
        ]

        interests = InterestLedger(mock_db_engine).get_interest_topics(["x", "y"], ["t1", "t2"])

        assert interests == {"x": {"t1", "t2"}, "y": {"t1"}}

    def test_no_candidates(self, mock_db_engine):
        assert InterestLedger(mock_db_engine).get_interest_topics([], ["t1"]) == {}


class TestPortfolioInterestProcessor:
    """Tests for description-change processing."""

    @pytest.fixture
    def registry(self):
        return MagicMock()

    @pytest.fixture
    def ledger(self):
        return MagicMock()

    @pytest.fixture
    def processor(self, mock_db_engine, registry, ledger):
        return PortfolioInterestProcessor(mock_db_engine, registry, ledger)

    def test_personal_description(self, processor, registry, ledger, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(
            metadata={"description_topics": ["t-old", "t-keep"]},
        )
        registry.create_or_update_topic.side_effect = ["t-keep", "t-new"]

        topic_ids = processor.process(
            "p1", "u1", True,
            [("Design", "Visual design"), ("Branding", "Brand identity")],
        )

        assert topic_ids == ["t-keep", "t-new"]
        registry.decrement_mention_counts.assert_called_once_with(["t-old"])
        stored = patched_session.execute.call_args.args[1]
        assert stored == {"portfolio_id": "p1", "topic_ids": ["t-keep", "t-new"]}
        ledger.update_user_interests.assert_called_once_with("u1", ["t-keep", "t-new"], 3.0)

    def test_project_description_weight(self, processor, registry, ledger, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(metadata={})
        registry.create_or_update_topic.return_value = "t1"

        processor.process("p2", "u1", False, [("Design", "Visual design")])

        registry.decrement_mention_counts.assert_not_called()
        ledger.update_user_interests.assert_called_once_with("u1", ["t1"], 0.1)

    def test_failed_topic_is_skipped(self, processor, registry, ledger, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(metadata=None)
        registry.create_or_update_topic.side_effect = [RuntimeError("embedding failed"), "t2"]

        topic_ids = processor.process("p1", "u1", True, [("A", "a"), ("B", "b")])

        assert topic_ids == ["t2"]

    def test_cleared_description_releases_topics(self, processor, registry, ledger, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(
            metadata={"description_topics": ["t1"]},
        )

        assert processor.process("p1", "u1", True, []) == []

        registry.decrement_mention_counts.assert_called_once_with(["t1"])
        ledger.update_user_interests.assert_called_once_with("u1", [], 3.0)

    def test_missing_portfolio(self, processor, patched_session):
        patched_session.execute.return_value.fetchone.return_value = None
        with pytest.raises(LookupError):
            processor.process("missing", "u1", True, [])

    def test_change_is_recorded_after_crediting(self, processor, registry, ledger, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(metadata={})
        registry.create_or_update_topic.return_value = "t1"
        ledger.update_user_interests.return_value = True

        processor.process("p1", "u1", True, [("Design", "Visual design")], change_id="task-1")

        sql, params = patched_session.execute.call_args.args
        assert "{interests_change_id}" in str(sql)
        assert params == {"portfolio_id": "p1", "change_id": "task-1"}

    def test_repeated_change_is_skipped(self, processor, registry, ledger, patched_session, make_row):
        """A redelivered change neither bumps mention counts nor credits interests again."""
        patched_session.execute.return_value.fetchone.return_value = make_row(
            metadata={"description_topics": ["t1"], "interests_change_id": "task-1"},
        )

        topic_ids = processor.process("p1", "u1", True, [("Design", "Visual design")], change_id="task-1")

        assert topic_ids == ["t1"]
        registry.create_or_update_topic.assert_not_called()
        registry.decrement_mention_counts.assert_not_called()
        ledger.update_user_interests.assert_not_called()

    def test_abandoned_update_is_not_recorded(self, processor, registry, ledger, patched_session, make_row):
        patched_session.execute.return_value.fetchone.return_value = make_row(metadata={})
        registry.create_or_update_topic.return_value = "t1"
        ledger.update_user_interests.return_value = False

        processor.process("p1", "u1", True, [("Design", "Visual design")], change_id="task-1")

        assert not any("interests_change_id" in s for s in _executed_sql(patched_session))
