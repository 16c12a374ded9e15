"""
Error taxonomy for ai-lambda-service.

Every failure the service raises derives from LambdaServiceError, so the
endpoint host can catch one type and turn it into an HTTP error response.

    LambdaServiceError
    ├── ConfigError          config file unreadable / invalid
    ├── HandlerError         handler could not be built or failed
    │   └── CombinedFailure  session path AND CLI fallback both failed
    ├── SpawnError           child process could not be launched
    ├── TransportClosedError child process exited / pipe closed
    ├── RpcError             JSON-RPC error response
    │   └── RpcTimeoutError  no response before the deadline
    ├── ToolNotFoundError    remote catalog lacks the query tool
    ├── ToolError            remote tool reported isError
    └── CliError             one-shot CLI invocation failed
"""

from __future__ import annotations


class LambdaServiceError(RuntimeError):
    """Base class for all service errors."""


class ConfigError(LambdaServiceError):
    pass


class HandlerError(LambdaServiceError):
    pass


class SpawnError(LambdaServiceError):
    pass


class TransportClosedError(LambdaServiceError):
    pass


class RpcError(LambdaServiceError):
    """A JSON-RPC response carried an ``error`` member."""

    def __init__(self, message: str, error: dict | None = None):
        super().__init__(message)
        self.error = error or {}


class RpcTimeoutError(RpcError):
    """A request was not answered before its deadline."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"Request {method} timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class ToolNotFoundError(LambdaServiceError):
    def __init__(self, tool_name: str, available: list[str]):
        super().__init__(
            f"Tool '{tool_name}' not found. Available tools: {', '.join(available) or 'none'}"
        )
        self.tool_name = tool_name
        self.available = available


class ToolError(LambdaServiceError):
    pass


class CliError(LambdaServiceError):
    def __init__(self, message: str, stderr: str = ""):
        super().__init__(f"{message}: {stderr}" if stderr else message)
        self.stderr = stderr


class CombinedFailure(HandlerError):
    """Both the persistent session and the CLI fallback failed."""

    def __init__(self, session_error: BaseException, cli_error: BaseException):
        super().__init__(
            f"WorkIQ query failed. MCP error: {session_error}. CLI error: {cli_error}"
        )
        self.session_error = session_error
        self.cli_error = cli_error
