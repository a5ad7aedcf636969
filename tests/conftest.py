"""Test configuration and fixtures."""

import json
import sys
import textwrap
import time
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from iac_pipeline.core.cancellation import NEVER_CANCELLED, CancellationToken
from iac_pipeline.core.errors import SourceUnavailable
from iac_pipeline.core.models import (
    Artifact,
    DeploymentCredential,
    ExecutionKind,
    PipelineExecution,
    SourceRef,
    TriggerEvent,
    ValidationResult,
    ValidationStatus,
    ValidatorPolicy,
    ValidatorSpec,
)
from iac_pipeline.db import init_database
from iac_pipeline.deploy import DeploymentExecutor, InMemoryTarget
from iac_pipeline.gate import GateAggregator
from iac_pipeline.pipeline import (
    DeployStage,
    EnvironmentLocks,
    InMemoryRecorder,
    PipelineStateMachine,
)
from iac_pipeline.sourcing import ArtifactSource
from iac_pipeline.triggers import sign

NETWORK_TEMPLATE = textwrap.dedent(
    """\
    AWSTemplateFormatVersion: "2010-09-09"
    Resources:
      Vpc:
        Type: AWS::EC2::VPC
        Properties:
          CidrBlock: 10.0.0.0/16
      Subnet:
        Type: AWS::EC2::Subnet
        Properties:
          VpcId: !Ref Vpc
          CidrBlock: 10.0.1.0/24
    """
).encode()

NETWORK_OPERATIONS = frozenset(
    f"{resource_type}:{verb}"
    for resource_type in ("AWS::EC2::VPC", "AWS::EC2::Subnet")
    for verb in ("create", "update", "delete")
)


def make_source(
    commit_sha: str = "a" * 40,
    repository: str = "acme/platform-infra",
    branch: str = "main",
    pull_request: Optional[int] = None,
) -> SourceRef:
    return SourceRef(
        repository=repository,
        branch=branch,
        commit_sha=commit_sha,
        pull_request=pull_request,
    )


def make_trigger(event_type: str = "push", **source_overrides) -> TriggerEvent:
    return TriggerEvent(event_type=event_type, source=make_source(**source_overrides))


def make_execution(
    kind: ExecutionKind = ExecutionKind.FULL, environment: str = "production", **source
) -> PipelineExecution:
    return PipelineExecution(
        trigger=make_trigger(
            "push" if kind == ExecutionKind.FULL else "pull_request", **source
        ),
        kind=kind,
        environment=environment,
    )


def make_artifact(body: bytes = NETWORK_TEMPLATE, **source) -> Artifact:
    return Artifact(body=body, path="templates/network.yml", source=make_source(**source))


def spec(name: str, policy: str = "blocking", timeout: float = 5.0, **options) -> ValidatorSpec:
    return ValidatorSpec(
        name=name,
        kind="command",
        policy=ValidatorPolicy(policy),
        timeout_seconds=timeout,
        options=tuple(options.items()),
    )


class StubAdapter:
    """Adapter returning a fixed status after an optional delay."""

    def __init__(
        self,
        spec: ValidatorSpec,
        status: ValidationStatus,
        delay: float = 0.0,
        on_run: Optional[Callable[[], None]] = None,
    ):
        self.spec = spec
        self.status = status
        self.delay = delay
        self.on_run = on_run

    def run(
        self, artifact: Artifact, cancel_token: CancellationToken = NEVER_CANCELLED
    ) -> ValidationResult:
        if self.on_run is not None:
            self.on_run()
        if self.delay:
            cancel_token.wait(self.delay)
        return ValidationResult(
            validator=self.spec.name,
            policy=self.spec.policy,
            status=self.status,
            duration_seconds=self.delay,
        )


def stub_factory(
    statuses: Dict[str, ValidationStatus],
    delays: Optional[Dict[str, float]] = None,
    calls: Optional[list] = None,
) -> Callable[[ValidatorSpec], StubAdapter]:
    """Adapter factory answering each validator name with a fixed status."""
    delays = delays or {}

    def factory(validator_spec: ValidatorSpec) -> StubAdapter:
        on_run = None
        if calls is not None:
            on_run = lambda: calls.append(validator_spec.name)  # noqa: E731
        return StubAdapter(
            validator_spec,
            statuses.get(validator_spec.name, ValidationStatus.PASS),
            delays.get(validator_spec.name, 0.0),
            on_run,
        )

    return factory


class FakeSource(ArtifactSource):
    """Serves one template body for every commit, or fails."""

    def __init__(self, body: bytes = NETWORK_TEMPLATE, fail: bool = False):
        self.body = body
        self.fail = fail
        self.fetches = []

    def fetch(self, source, template_path, cancel_token=NEVER_CANCELLED):
        self.fetches.append(source.commit_sha)
        if self.fail:
            raise SourceUnavailable(f"{template_path} missing at {source.commit_sha}")
        return Artifact(body=self.body, path=template_path, source=source)


@pytest.fixture
def credential() -> DeploymentCredential:
    return DeploymentCredential(
        name="network-deployer", allowed_operations=NETWORK_OPERATIONS
    )


@pytest.fixture
def target() -> InMemoryTarget:
    return InMemoryTarget("production")


@pytest.fixture
def recorder() -> InMemoryRecorder:
    return InMemoryRecorder()


@pytest.fixture
def build_machine(credential, target, recorder):
    """Factory for state machines wired to in-memory collaborators."""

    def build(
        statuses: Optional[Dict[str, ValidationStatus]] = None,
        validators=None,
        source: Optional[ArtifactSource] = None,
        deploy_target: Optional[InMemoryTarget] = None,
        deploy_credential: Optional[DeploymentCredential] = None,
        locks: Optional[EnvironmentLocks] = None,
        delays: Optional[Dict[str, float]] = None,
        **deploy_options,
    ) -> PipelineStateMachine:
        executor_options = {
            key: deploy_options.pop(key)
            for key in ("deploy_timeout_seconds", "poll_interval_seconds", "resolve_timeout_seconds")
            if key in deploy_options
        }
        executor_options.setdefault("poll_interval_seconds", 0.01)
        return PipelineStateMachine(
            source=source or FakeSource(),
            template_path="templates/network.yml",
            validators=validators or [spec("lint"), spec("security")],
            deploy=DeployStage(
                environment="production",
                executor=DeploymentExecutor(deploy_target or target, **executor_options),
                credential=deploy_credential or credential,
                **deploy_options,
            ),
            gate=GateAggregator(adapter_factory=stub_factory(statuses or {}, delays)),
            locks=locks or EnvironmentLocks(),
            recorder=recorder,
        )

    return build


@pytest.fixture
def tool_script(tmp_path: Path):
    """Write a small Python script standing in for an external tool.

    Returns the argv prefix that runs it.
    """

    def write(source: str, name: str = "tool.py") -> tuple:
        path = tmp_path / name
        path.write_text(textwrap.dedent(source))
        return (sys.executable, str(path))

    return write


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll until ``predicate`` is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()



WEBHOOK_SECRET = "s3cret-webhook-key"


def push_payload(
    branch: str = "main", after: str = "b" * 40, repository: str = "acme/platform-infra"
) -> dict:
    return {
        "ref": f"refs/heads/{branch}",
        "before": "0" * 39 + "1",
        "after": after,
        "deleted": False,
        "repository": {"full_name": repository},
        "sender": {"login": "octocat"},
    }


def pull_request_payload(
    action: str = "opened",
    base: str = "main",
    head_sha: str = "c" * 40,
    number: int = 42,
    repository: str = "acme/platform-infra",
) -> dict:
    return {
        "action": action,
        "number": number,
        "pull_request": {
            "number": number,
            "base": {"ref": base},
            "head": {"ref": "feature/subnets", "sha": head_sha},
        },
        "repository": {"full_name": repository},
        "sender": {"login": "octocat"},
    }


def webhook_request(event: str, payload: dict, secret: str = WEBHOOK_SECRET) -> tuple:
    """Signed ``(headers, body)`` for a webhook delivery."""
    body = json.dumps(payload).encode()
    headers = {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": "72d3162e-cc78-11e3-81ab-4c9367dc0958",
        "X-Hub-Signature-256": sign(body, secret),
        "Content-Type": "application/json",
    }
    return headers, body


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine with every table created."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pipeline.db'}",
        connect_args={"check_same_thread": False},
    )
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()
