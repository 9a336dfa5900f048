from agent_loop.evaluation.engine import EvaluationEngine, EvaluationInput, weighted_overall
from agent_loop.evaluation.feedback import FeedbackService
from agent_loop.evaluation.matrix import (
    EvalMatrix,
    MetricSpec,
    load_eval_matrix,
    parse_eval_matrix,
)

__all__ = [
    "EvalMatrix",
    "EvaluationEngine",
    "EvaluationInput",
    "FeedbackService",
    "MetricSpec",
    "load_eval_matrix",
    "parse_eval_matrix",
    "weighted_overall",
]
