"""
Task failure taxonomy.

The retry policy only looks at these classes: validation failures fail fast,
everything else is treated as transient and retried up to the task's budget.
"""
from typing import Optional


class TaskError(Exception):
    """Base class for failures raised while executing a task."""


class TaskValidationError(TaskError):
    """Input is missing or invalid; retrying cannot change the outcome."""


class TransientProviderError(TaskError):
    """Provider, network or storage failure that may succeed on a later attempt."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class TaskTimeoutError(TransientProviderError):
    """The attempt exceeded its wall-clock deadline."""

    def __init__(self, timeout_seconds: float, current_step: Optional[str], progress: Optional[int]):
        self.timeout_seconds = timeout_seconds
        self.current_step = current_step
        self.progress = progress
        super().__init__(
            f"任务处理超时 ({timeout_seconds:g}秒)，最后步骤: {current_step or '未知'}，进度: {progress or 0}%"
        )


class CircuitOpenError(TransientProviderError):
    """Raised when a circuit breaker is open and the request is rejected."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Circuit breaker OPEN for {service}, request rejected", provider=service)


class TaskAccessError(TaskError):
    """Some of the requested tasks do not exist or belong to another user."""
