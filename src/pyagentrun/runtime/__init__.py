from .loop import ExecutionLoop, LoopOutcome, LoopState
from .options import RetryPolicy, SystemPromptPreset, TaskOptions
from .stream import StreamMessage, TaskStream

__all__ = [
    "ExecutionLoop",
    "LoopOutcome",
    "LoopState",
    "RetryPolicy",
    "StreamMessage",
    "SystemPromptPreset",
    "TaskOptions",
    "TaskStream",
]
