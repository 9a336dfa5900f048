"""User feedback intake and its blending into evaluation scores."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from agent_loop.errors import AppError, ValidationFailedError
from agent_loop.evaluation.engine import EvaluationEngine
from agent_loop.models import FeedbackView
from agent_loop.repository import AgentRepository

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


class FeedbackService:
    def __init__(self, *, repository: AgentRepository, engine: EvaluationEngine) -> None:
        self.repository = repository
        self.engine = engine

    def submit_feedback(
        self,
        *,
        run_id: str,
        user_id: str,
        rating: int,
        comment: str | None = None,
    ) -> FeedbackView:
        """Store a 1-5 rating, then refresh the run's final score.

        Score refresh is best-effort: a run without an evaluation keeps its
        feedback and gets a final score only once it is evaluated and rated again.
        """

        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationFailedError(
                f"Rating must be between {MIN_RATING} and {MAX_RATING}",
                details={"rating": rating},
            )
        self.repository.require_run(run_id=run_id)
        feedback = self.repository.add_feedback(
            run_id=run_id,
            user_id=user_id,
            rating=rating,
            comment=comment,
        )
        logger.info("Feedback stored for run %s: rating=%d", run_id, rating)

        try:
            self.engine.incorporate_user_feedback(run_id)
        except (AppError, SQLAlchemyError) as error:
            logger.warning("Final score not updated for run %s: %s", run_id, error)
        return feedback

    def get_feedback_for_run(self, run_id: str) -> FeedbackView | None:
        return self.repository.latest_feedback(run_id=run_id)
