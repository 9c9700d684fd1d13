"""Custom exceptions for ideacode."""


class IdeacodeError(Exception):
    """Base exception for ideacode."""

    pass


class ConfigurationError(IdeacodeError):
    """Configuration-related errors."""

    pass


class LLMError(IdeacodeError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RateLimitError(LLMAPIError):
    """Endpoint asked us to slow down."""

    pass


class StreamError(LLMError):
    """Response stream broke before it finished."""

    pass


class RetryExhaustedError(LLMError):
    """A retry policy gave up."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class RateLimitExhaustedError(RetryExhaustedError):
    """Still rate limited after the last allowed attempt."""

    def __init__(self, attempts: int, status_code: int | None = None):
        super().__init__(
            f"Rate limited ({status_code}) after {attempts} attempts",
            attempts=attempts,
        )
        self.status_code = status_code


class EmptyResponseError(RetryExhaustedError):
    """Model kept answering with neither text nor tool calls."""

    def __init__(self, attempts: int):
        super().__init__(
            f"Model returned empty output {attempts} times",
            attempts=attempts,
        )


class ToolError(IdeacodeError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class SessionError(IdeacodeError):
    """Conversation persistence errors."""

    pass


class ContextError(IdeacodeError):
    """Context window errors."""

    pass


class CompactionError(ContextError):
    """Summarizing older history failed."""

    pass
