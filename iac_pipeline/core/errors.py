"""
Error taxonomy for the pipeline.

Every error carries a stable code for programmatic handling, mirroring the
policy errors used at the API boundary.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


class PipelineError(Exception):
    """
    Base class for pipeline errors.

    Attributes:
        code: Stable error code for programmatic handling
        message: Human-readable error description
        retryable: Whether re-submitting the same request may succeed
    """

    code = "PIPELINE_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "retryable": self.retryable,
            }
        }


class ValidationFailure(PipelineError):
    """A blocking validator reported ``fail``."""

    code = "VALIDATION_FAILED"


class ToolInvocationError(PipelineError):
    """An adapter could not run or parse its external tool."""

    code = "TOOL_INVOCATION_ERROR"


class StageTimeout(PipelineError):
    """A validator or deployment exceeded its time bound."""

    code = "TIMEOUT"


class PermissionInsufficient(PipelineError):
    """The deployment credential lacks operations the artifact requires."""

    code = "PERMISSION_INSUFFICIENT"

    def __init__(
        self, credential: str, missing: Iterable[str], reason: Optional[str] = None
    ):
        self.credential = credential
        self.missing: List[str] = sorted(set(missing))
        if reason is not None:
            message = f"Credential '{credential}' cannot be checked: {reason}"
        else:
            message = (
                f"Credential '{credential}' is missing required operations: "
                f"{', '.join(self.missing)}"
            )
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["error"]["details"] = {
            "credential": self.credential,
            "missing_operations": self.missing,
        }
        return data


class TriggerAuthenticationFailure(PipelineError):
    """Inbound change notification failed signature verification."""

    code = "TRIGGER_AUTHENTICATION_FAILED"


class ConcurrentDeploymentConflict(PipelineError):
    """Another execution holds the deployment lock for the environment."""

    code = "CONCURRENT_DEPLOYMENT_CONFLICT"
    retryable = True

    def __init__(self, environment: str, holder: Optional[str] = None):
        self.environment = environment
        self.holder = holder
        detail = f" (held by execution {holder})" if holder else ""
        super().__init__(
            f"Environment '{environment}' is already being deployed{detail}"
        )


class DeploymentFailed(PipelineError):
    """The deployment target reported a failure."""

    code = "DEPLOYMENT_FAILED"


class SourceUnavailable(PipelineError):
    """The artifact could not be fetched from source control."""

    code = "SOURCE_UNAVAILABLE"


class InvalidTransition(PipelineError):
    """A state transition not allowed by the state machine was requested."""

    code = "INVALID_TRANSITION"


class ExecutionImmutable(PipelineError):
    """A terminal execution record was modified."""

    code = "EXECUTION_IMMUTABLE"


class ConfigurationError(PipelineError):
    """The pipeline configuration is invalid."""

    code = "CONFIGURATION_ERROR"


class ExecutionCancelled(PipelineError):
    """The execution was cancelled while a stage was in progress."""

    code = "CANCELLED"


class MalformedTrigger(PipelineError):
    """An authenticated change notification could not be understood."""

    code = "MALFORMED_TRIGGER"
