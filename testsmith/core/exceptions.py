"""Custom exception hierarchy for testsmith."""
from __future__ import annotations

from typing import Any, Dict, Optional


class TestsmithError(Exception):
    """Base exception for all testsmith errors."""

    __test__ = False  # keep pytest from collecting it

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message


class ConfigurationError(TestsmithError):
    """Invalid configuration, missing credentials or malformed tool schemas."""
    pass


class LLMError(TestsmithError):
    """Base exception for oracle-related errors."""

    def __init__(
        self,
        message: str,
        provider: str,
        retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.provider = provider
        self.retryable = retryable
        super().__init__(message, context)
        self.context["provider"] = provider
        self.context["retryable"] = retryable


class LLMTimeoutError(LLMError):
    """Oracle call timed out."""

    def __init__(
        self,
        provider: str,
        timeout: float,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"LLM call to {provider} timed out after {timeout}s"
        super().__init__(message, provider, retryable=True, context=context)
        self.timeout = timeout
        self.context["timeout"] = timeout


class LLMRateLimitError(LLMError):
    """Rate limit exceeded for the oracle provider."""

    def __init__(
        self,
        provider: str,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"Rate limit exceeded for {provider}"
        if retry_after:
            message += f", retry after {retry_after}s"
        super().__init__(message, provider, retryable=True, context=context)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class LLMAPIError(LLMError):
    """Oracle API returned an error."""

    def __init__(
        self,
        provider: str,
        status_code: Optional[int] = None,
        error_message: Optional[str] = None,
        retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"LLM API error for {provider}"
        if error_message:
            message += f": {error_message}"
        super().__init__(message, provider, retryable=retryable, context=context)
        self.status_code = status_code
        self.error_message = error_message
        if status_code:
            self.context["status_code"] = status_code


class OracleParseError(TestsmithError):
    """Oracle answered, but not with the structured output that was asked for."""

    def __init__(self, message: str, expected: str, preview: str = ""):
        super().__init__(message, {"expected": expected})
        self.expected = expected
        self.preview = preview


class StepError(TestsmithError):
    """A scenario step could not be carried out against the page."""

    kind = "unknown"

    def __init__(
        self,
        message: str,
        step_action: Optional[str] = None,
        step_target: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.step_action = step_action
        self.step_target = step_target
        if step_action:
            self.context["step_action"] = step_action
        if step_target:
            self.context["step_target"] = step_target


class StepTimeoutError(StepError):
    """The page did not reach the expected state in time."""

    kind = "timeout"


class ElementNotFoundError(StepError):
    """Locator matched nothing on the page."""

    kind = "not_found"

    def __init__(
        self,
        locator: str,
        step_action: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            f"Element not found (locator: {locator})",
            step_action=step_action,
            step_target=locator,
            context=context,
        )
        self.locator = locator


class AssertionFailedError(StepError):
    """An assert step observed something other than the expected value."""

    kind = "assertion_failed"


class NetworkError(StepError):
    """Navigation or request failure."""

    kind = "network_error"


class SessionStartError(TestsmithError):
    """Browser session could not be started."""
    pass


class PlannerError(TestsmithError):
    """The initial plan could not be produced."""
    pass
