from __future__ import annotations


class AgentRunError(Exception):
    """Base class for runtime errors.

    `code` is stable and safe to show to callers; `str(err)` may carry detail
    that should stay in traces.
    """

    code = "internal_error"
    user_message = "The task failed."


class ConfigError(AgentRunError, ValueError):
    code = "config_error"
    user_message = "The runtime is misconfigured."


class DuplicateTool(AgentRunError, ValueError):
    code = "duplicate_tool"
    user_message = "A tool with this name is already registered."


class UnknownTool(AgentRunError, KeyError):
    code = "unknown_tool"
    user_message = "The requested tool does not exist."

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return Exception.__str__(self)


class InvalidArguments(AgentRunError, ValueError):
    code = "invalid_arguments"
    user_message = "Tool arguments did not match the tool's input schema."


class PermissionDenied(AgentRunError):
    code = "permission_denied"
    user_message = "The tool call was denied."


class ToolHandlerFailure(AgentRunError, RuntimeError):
    code = "tool_handler_failure"
    user_message = "A tool failed while running."


class BackendUnavailable(AgentRunError, RuntimeError):
    code = "backend_unavailable"
    user_message = "The reasoning backend is unavailable."


class BackendProtocolError(AgentRunError, RuntimeError):
    code = "backend_protocol_error"
    user_message = "The reasoning backend returned an invalid response."


class StepLimitExceeded(AgentRunError, RuntimeError):
    code = "step_limit_exceeded"
    user_message = "The task exceeded its step limit."


class SessionNotFound(AgentRunError, KeyError):
    code = "session_not_found"
    user_message = "The session does not exist."

    def __str__(self) -> str:
        return Exception.__str__(self)


class SessionBusy(AgentRunError, RuntimeError):
    code = "session_busy"
    user_message = "Another task is already running on this session."
