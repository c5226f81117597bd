"""ralph-loop: run a model/tool round repeatedly until the task is verified done."""

__version__ = "0.1.0"

from ralphloop.config import LoopSettings, ModelConfig
from ralphloop.generation import GenerationResult, HasToolCall, StepCountIs, StepLoop
from ralphloop.loader import load_settings
from ralphloop.log import LogContext, get_logger
from ralphloop.log import configure_logging as configure
from ralphloop.ralph import (
    AnyOf,
    Callback,
    CancellationError,
    CompletionReason,
    ConfigurationError,
    EvaluationError,
    GenerationError,
    IterationCountIs,
    JudgeModel,
    LoopState,
    RalphLoop,
    RalphResult,
    RalphStream,
    SelfJudge,
    StopCondition,
    StopConditionError,
    Timeout,
    TokenBudget,
    Verdict,
    iteration_count_is,
)
from ralphloop.tool import FunctionTool, Tool, tool
from ralphloop.types import RalphError

__all__ = [
    "AnyOf",
    "Callback",
    "CancellationError",
    "CompletionReason",
    "ConfigurationError",
    "EvaluationError",
    "FunctionTool",
    "GenerationError",
    "GenerationResult",
    "HasToolCall",
    "IterationCountIs",
    "JudgeModel",
    "LogContext",
    "LoopSettings",
    "LoopState",
    "ModelConfig",
    "RalphError",
    "RalphLoop",
    "RalphResult",
    "RalphStream",
    "SelfJudge",
    "StepCountIs",
    "StepLoop",
    "StopCondition",
    "StopConditionError",
    "Timeout",
    "TokenBudget",
    "Tool",
    "Verdict",
    "configure",
    "get_logger",
    "iteration_count_is",
    "load_settings",
    "tool",
]
