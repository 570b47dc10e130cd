"""
Condition engine: trigger evaluation, invalidations and evaluation sessions.
"""
from .conditions import ConditionEngine, EngineResult
from .evaluator import ConditionResult, compare, evaluate_condition, resolve_operand
from .session import EvaluationSession, SessionRegistry, TriggerState

__all__ = [
    "ConditionEngine",
    "EngineResult",
    "ConditionResult",
    "compare",
    "evaluate_condition",
    "resolve_operand",
    "EvaluationSession",
    "SessionRegistry",
    "TriggerState",
]
