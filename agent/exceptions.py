"""Custom exceptions for Tiered Agents."""


class AgentError(Exception):
    """Base class for all agent errors."""
    pass


class ConfigError(AgentError):
    """Raised when configuration is invalid or missing."""
    pass


class BackendError(AgentError):
    """Raised when a text-generation backend fails a request."""

    def __init__(
        self,
        backend_id: str,
        message: str,
        status: int | None = None,
        retryable: bool = True,
    ):
        super().__init__(f"[{backend_id}] {message}")
        self.backend_id = backend_id
        self.status = status
        self.retryable = retryable


class AuthError(BackendError):
    """Raised when a backend rejects the credentials. Never retried."""

    def __init__(self, backend_id: str, message: str = "Authentication failed", status: int | None = 401):
        super().__init__(backend_id, message, status=status, retryable=False)


class RateLimitError(BackendError):
    """Raised when a backend throttles the caller."""

    def __init__(self, backend_id: str, retry_after: float = 60.0, message: str = "Rate limit exceeded"):
        super().__init__(backend_id, f"{message} (retry after {retry_after}s)", status=429, retryable=True)
        self.retry_after = retry_after


class UnavailableError(BackendError):
    """Raised when a backend is unreachable or reports a server error."""

    def __init__(self, backend_id: str, message: str = "Service unavailable", status: int | None = 503):
        super().__init__(backend_id, message, status=status, retryable=True)


class NoBackendsAvailableError(AgentError):
    """Raised when every backend in the priority list has been exhausted."""

    def __init__(self, attempted: list[str] | None = None):
        self.attempted = list(attempted or [])
        tried = ", ".join(self.attempted) if self.attempted else "none"
        super().__init__(f"No backend available (tried: {tried})")


class ToolError(AgentError):
    """Base class for errors tied to a single tool call."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Raised when a requested tool does not exist."""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool not found: {tool_name}")


class ToolExecutionError(ToolError):
    """Raised when a tool fails during execution."""
    pass


class ApprovalRequiredError(ToolError):
    """Raised when a tool call needs approval but no callback is registered."""
    pass


class ApprovalDeniedError(ToolError):
    """Raised when a tool call is denied by policy or by the user."""

    def __init__(self, tool_name: str, reason: str, withdrawn: bool = False):
        super().__init__(tool_name, f"Tool '{tool_name}' denied: {reason}")
        self.reason = reason
        self.withdrawn = withdrawn


class ContextOverflowError(AgentError):
    """Raised by strict callers when the kept window alone exceeds the budget."""
    pass
