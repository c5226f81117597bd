"""Ralph loop: iterate generation rounds until an evaluator verifies completion."""

from ralphloop.ralph.config import (
    CancellationError,
    CompletionReason,
    ConfigurationError,
    EvaluationError,
    GenerationError,
    IterationRecord,
    LoopState,
    RalphLoopError,
    RalphResult,
    StopConditionError,
    Verdict,
)
from ralphloop.ralph.detectors import (
    AnyOf,
    IterationCountIs,
    PredicateStopCondition,
    StopCondition,
    StopDecision,
    Timeout,
    TokenBudget,
    iteration_count_is,
)
from ralphloop.ralph.evaluators import (
    DEFAULT_COMPLETION_QUESTION,
    Callback,
    EvaluationContext,
    Evaluator,
    JudgeModel,
    SelfJudge,
    evaluate,
    parse_verdict,
)
from ralphloop.ralph.observers import ObserverBus
from ralphloop.ralph.runner import RalphLoop
from ralphloop.ralph.streaming import RalphStream

__all__ = [
    "DEFAULT_COMPLETION_QUESTION",
    "AnyOf",
    "Callback",
    "CancellationError",
    "CompletionReason",
    "ConfigurationError",
    "EvaluationContext",
    "EvaluationError",
    "Evaluator",
    "GenerationError",
    "IterationCountIs",
    "IterationRecord",
    "JudgeModel",
    "LoopState",
    "ObserverBus",
    "PredicateStopCondition",
    "RalphLoop",
    "RalphLoopError",
    "RalphResult",
    "RalphStream",
    "SelfJudge",
    "StopCondition",
    "StopConditionError",
    "StopDecision",
    "Timeout",
    "TokenBudget",
    "Verdict",
    "evaluate",
    "iteration_count_is",
    "parse_verdict",
]
