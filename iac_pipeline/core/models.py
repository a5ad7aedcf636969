"""
Domain model for the pipeline.

Artifacts, validator results and verdicts are immutable value objects.
A PipelineExecution is the only mutable record and is sealed once it
reaches a terminal state.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

import yaml

from .errors import ExecutionImmutable


class ValidatorPolicy(str, Enum):
    """How a validator's non-pass status affects the gate."""

    BLOCKING = "blocking"
    ADVISORY = "advisory"


class ValidationStatus(str, Enum):
    """Normalized outcome of a single validator run."""

    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    TIMEOUT = "timeout"


class GateStatus(str, Enum):
    """Aggregated gate outcome."""

    PASS = "pass"
    FAIL = "fail"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ExecutionKind(str, Enum):
    """FULL runs deploy; PRE_MERGE runs stop after testing."""

    FULL = "full"
    PRE_MERGE = "pre_merge"


class ExecutionState(str, Enum):
    PENDING = "pending"
    SOURCING = "sourcing"
    TESTING = "testing"
    DEPLOYING = "deploying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {ExecutionState.SUCCEEDED, ExecutionState.FAILED, ExecutionState.CANCELLED}
)


class ExecutionOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChangeAction(str, Enum):
    """Resource-change verbs a deployment can issue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Source & artifact
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceRef:
    """Where an artifact came from."""

    repository: str
    branch: str
    commit_sha: str
    pull_request: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository,
            "branch": self.branch,
            "commit_sha": self.commit_sha,
            "pull_request": self.pull_request,
        }


class _TemplateLoader(yaml.SafeLoader):
    """SafeLoader that tolerates CloudFormation short-form intrinsics."""


def _construct_tagged(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Any:
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return {tag_suffix: value}


_TemplateLoader.add_multi_constructor("!", _construct_tagged)


class TemplateError(ValueError):
    """A template body cannot be read as a template document."""


def load_template(body: bytes) -> Dict[str, Any]:
    """Parse a JSON or YAML template body.

    Raises:
        TemplateError: if the body is not UTF-8, does not parse, or is not
            a mapping
    """
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise TemplateError(f"template is not UTF-8 ({e.reason})") from e

    document: Any = None
    if text.lstrip().startswith("{"):
        try:
            document = json.loads(text)
        except ValueError:
            document = None

    if not isinstance(document, dict):
        try:
            document = yaml.load(text, Loader=_TemplateLoader)
        except yaml.YAMLError as e:
            problem = getattr(e, "problem", None) or type(e).__name__
            raise TemplateError(f"template does not parse ({problem})") from e
    if not isinstance(document, dict):
        raise TemplateError("template is not a mapping")
    return document


def parse_template(body: bytes) -> Dict[str, Any]:
    """Lenient form of :func:`load_template`.

    Returns an empty dict when the body cannot be read; reporting malformed
    templates is the validators' job.
    """
    try:
        return load_template(body)
    except TemplateError:
        return {}


@dataclass(frozen=True)
class Artifact:
    """A candidate template pinned to a source reference."""

    body: bytes
    path: str
    source: SourceRef

    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.body).hexdigest()

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.content_hash, self.source.commit_sha)

    def declared_resources(self) -> Dict[str, str]:
        """Map of logical resource id to resource type, all or nothing.

        Raises:
            TemplateError: if the body does not parse, ``Resources`` is not a
                mapping, or a resource has no literal string ``Type``
        """
        resources = load_template(self.body).get("Resources")
        if not isinstance(resources, dict):
            raise TemplateError("template has no Resources mapping")
        declared: Dict[str, str] = {}
        for logical_id, definition in resources.items():
            resource_type = definition.get("Type") if isinstance(definition, dict) else None
            if not isinstance(resource_type, str) or not resource_type:
                raise TemplateError(f"resource '{logical_id}' has no literal Type")
            declared[str(logical_id)] = resource_type
        return declared

    def resources(self) -> Dict[str, str]:
        """Map of logical resource id to resource type.

        Unreadable templates and resources are skipped.
        """
        resources = parse_template(self.body).get("Resources")
        if not isinstance(resources, dict):
            return {}
        declared: Dict[str, str] = {}
        for logical_id, definition in resources.items():
            if isinstance(definition, dict) and isinstance(definition.get("Type"), str):
                declared[str(logical_id)] = definition["Type"]
        return declared

    def resource_types(self) -> FrozenSet[str]:
        return frozenset(self.resources().values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "content_hash": self.content_hash,
            "size": len(self.body),
            "source": self.source.to_dict(),
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidatorSpec:
    """Configured validator invocation."""

    name: str
    kind: str
    policy: ValidatorPolicy = ValidatorPolicy.BLOCKING
    timeout_seconds: float = 300.0
    args: Tuple[str, ...] = ()
    retries: int = 0
    options: Tuple[Tuple[str, Any], ...] = ()

    @property
    def is_blocking(self) -> bool:
        return self.policy == ValidatorPolicy.BLOCKING

    def option(self, key: str, default: Any = None) -> Any:
        return dict(self.options).get(key, default)


@dataclass(frozen=True)
class Finding:
    """A single diagnostic reported by a validator."""

    severity: Severity
    message: str
    location: Optional[str] = None
    rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "message": self.message,
            "location": self.location,
            "rule": self.rule,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        return cls(
            severity=Severity(data.get("severity", "info")),
            message=data.get("message", ""),
            location=data.get("location"),
            rule=data.get("rule"),
        )


@dataclass(frozen=True)
class ValidationResult:
    """Normalized result of one validator against one artifact."""

    validator: str
    policy: ValidatorPolicy
    status: ValidationStatus
    findings: Tuple[Finding, ...] = ()
    raw_output: str = ""
    duration_seconds: float = 0.0
    attempts: int = 1

    @property
    def passed(self) -> bool:
        return self.status == ValidationStatus.PASS

    @property
    def is_blocking(self) -> bool:
        return self.policy == ValidatorPolicy.BLOCKING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "validator": self.validator,
            "policy": self.policy.value,
            "status": self.status.value,
            "findings": [f.to_dict() for f in self.findings],
            "raw_output": self.raw_output,
            "duration_seconds": self.duration_seconds,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class GateVerdict:
    """Aggregated result of every validator in a stage."""

    stage: str
    status: GateStatus
    results: Tuple[ValidationResult, ...] = ()

    @property
    def passed(self) -> bool:
        return self.status == GateStatus.PASS

    def blocking_failures(self) -> List[ValidationResult]:
        return [r for r in self.results if r.is_blocking and not r.passed]

    def advisory_failures(self) -> List[ValidationResult]:
        return [r for r in self.results if not r.is_blocking and not r.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status.value,
            "results": [r.to_dict() for r in self.results],
        }


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


def operation_name(resource_type: str, action: ChangeAction) -> str:
    """Canonical operation string, e.g. ``AWS::S3::Bucket:create``."""
    return f"{resource_type}:{action.value}"


@dataclass(frozen=True)
class ResourceChange:
    """One planned change against the target environment."""

    logical_id: str
    resource_type: str
    action: ChangeAction

    @property
    def operation(self) -> str:
        return operation_name(self.resource_type, self.action)


@dataclass(frozen=True)
class DeploymentCredential:
    """A named, fixed set of allowed operations."""

    name: str
    allowed_operations: FrozenSet[str] = frozenset()
    # Identity the target assumes to apply changes, e.g. an IAM role ARN.
    role_arn: Optional[str] = None

    def allows(self, operation: str) -> bool:
        return operation in self.allowed_operations

    def missing(self, required: FrozenSet[str]) -> FrozenSet[str]:
        return frozenset(required) - self.allowed_operations


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TriggerEvent:
    """A verified, accepted change notification."""

    event_type: str
    source: SourceRef
    action: Optional[str] = None
    delivery_id: Optional[str] = None
    sender: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "action": self.action,
            "delivery_id": self.delivery_id,
            "sender": self.sender,
            "source": self.source.to_dict(),
        }


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class StateTransition:
    from_state: ExecutionState
    to_state: ExecutionState
    at: datetime
    note: Optional[str] = None


@dataclass
class PipelineExecution:
    """One run of the pipeline for one trigger event.

    Once sealed (terminal) every attribute write raises ExecutionImmutable,
    and ``history``, ``verdicts`` and ``deployment`` become read-only views.
    """

    trigger: TriggerEvent
    kind: ExecutionKind
    environment: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: ExecutionState = ExecutionState.PENDING
    artifact: Optional[Artifact] = None
    verdicts: Dict[str, GateVerdict] = field(default_factory=dict)
    deployment: Optional[Dict[str, Any]] = None
    outcome: Optional[ExecutionOutcome] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retrigger_of: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    history: List[StateTransition] = field(default_factory=list)

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_sealed"):
            raise ExecutionImmutable(
                f"Execution {self.__dict__.get('id')} is terminal; "
                f"cannot set '{name}'"
            )
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def sealed(self) -> bool:
        return bool(self.__dict__.get("_sealed"))

    def seal(self) -> None:
        if self.sealed:
            return
        self.__dict__["history"] = tuple(self.history)
        self.__dict__["verdicts"] = MappingProxyType(dict(self.verdicts))
        self.__dict__["deployment"] = _freeze(self.deployment)
        self.__dict__["_sealed"] = True

    def record_verdict(self, verdict: GateVerdict) -> None:
        if self.sealed:
            raise ExecutionImmutable(f"Execution {self.id} is terminal")
        self.verdicts[verdict.stage] = verdict

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "environment": self.environment,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "trigger": self.trigger.to_dict(),
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "verdicts": {k: v.to_dict() for k, v in self.verdicts.items()},
            "deployment": _thaw(self.deployment),
            "error_code": self.error_code,
            "error_message": self.error_message,
            "retrigger_of": self.retrigger_of,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
