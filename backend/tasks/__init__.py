"""
AskMatch Celery Tasks

Task Modules:
    - interests: Interest ledger updates after description changes and notes

Queue Priorities:
    - high: Portfolio description changes
    - normal: Note indexing side effects

Usage:
    from backend.tasks.interests import trigger_portfolio_interests

    trigger_portfolio_interests(
        portfolio_id="p-123",
        user_id="user123",
        is_personal_portfolio=True,
        topics=[["Machine Learning", "Training statistical models"]],
    )
"""

__all__ = [
    "interests",
]
