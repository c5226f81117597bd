"""Inner step loop: one bounded model/tool generation round."""

from ralphloop.generation.messages import (
    OutputParseError,
    build_messages,
    flatten_transcript,
    merge_usage,
    parse_tool_arguments,
)
from ralphloop.generation.step_loop import (
    GenerationResult,
    GenerationStream,
    InnerLoop,
    StepLoop,
    StepLoopError,
    StepResult,
)
from ralphloop.generation.stop import HasToolCall, StepCountIs, StepStopCondition, should_stop

__all__ = [
    "GenerationResult",
    "GenerationStream",
    "HasToolCall",
    "InnerLoop",
    "OutputParseError",
    "StepCountIs",
    "StepLoop",
    "StepLoopError",
    "StepResult",
    "StepStopCondition",
    "build_messages",
    "flatten_transcript",
    "merge_usage",
    "parse_tool_arguments",
    "should_stop",
]
