"""
Validator adapter interface.

Each adapter wraps one external checking tool: it writes the artifact to a
private working directory, runs the tool out of process under the validator's
timeout and normalizes whatever the tool printed into a ValidationResult.

Adapters never raise for tool problems. Missing binaries, crashes,
unparseable output, timeouts and cancellation all come back as
``error``/``timeout`` results.
"""
from __future__ import annotations

import logging
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ..core.cancellation import NEVER_CANCELLED, CancellationToken
from ..core.errors import ToolInvocationError
from ..core.models import (
    Artifact,
    Finding,
    Severity,
    ValidationResult,
    ValidationStatus,
    ValidatorSpec,
)
from ..core.process import ToolRun, run_tool

logger = logging.getLogger(__name__)

DEFAULT_RETRY_BACKOFF_SECONDS = 2.0


class ValidatorAdapter(ABC):
    """Abstract base class for validator adapters."""

    # Exit codes the adapter knows how to interpret.
    analyzable_exit_codes: Sequence[int] = (0, 1)

    def __init__(self, spec: ValidatorSpec):
        self.spec = spec

    @property
    @abstractmethod
    def kind(self) -> str:
        """Adapter type name used in pipeline configuration."""
        pass

    @abstractmethod
    def build_command(self, template_path: Path, workdir: Path) -> List[str]:
        """Return the argv used to invoke the tool."""
        pass

    @abstractmethod
    def interpret(self, run: ToolRun) -> Tuple[ValidationStatus, List[Finding]]:
        """Turn an analyzable tool run into a status and findings.

        Raises:
            ToolInvocationError: if the output cannot be analyzed
        """
        pass

    def is_analyzable(self, returncode: int) -> bool:
        return returncode in self.analyzable_exit_codes

    def is_transient(self, run: ToolRun) -> bool:
        """Whether an ``error`` outcome is worth retrying."""
        return False

    def run(
        self,
        artifact: Artifact,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> ValidationResult:
        """Run the validator against an artifact.

        ``timeout_seconds`` bounds the whole call, retries included.
        """
        started = time.monotonic()
        deadline = started + self.spec.timeout_seconds
        backoff = float(self.spec.option("retry_backoff_seconds", DEFAULT_RETRY_BACKOFF_SECONDS))
        attempt = 0

        while True:
            attempt += 1
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._result(ValidationStatus.TIMEOUT, [], "", started, attempt - 1)

            try:
                tool_run = self._execute(artifact, remaining, cancel_token)
            except ToolInvocationError as e:
                logger.warning(f"Validator {self.spec.name} could not be invoked: {e.message}")
                return self._result(
                    ValidationStatus.ERROR,
                    [Finding(Severity.ERROR, e.message)],
                    "",
                    started,
                    attempt,
                )

            status, findings = self._classify(tool_run)

            if (
                status == ValidationStatus.ERROR
                and not tool_run.cancelled
                and attempt <= self.spec.retries
                and self.is_transient(tool_run)
            ):
                delay = backoff * attempt
                if time.monotonic() + delay >= deadline:
                    return self._result(status, findings, tool_run.combined_output, started, attempt)
                logger.info(
                    f"Validator {self.spec.name} hit a transient error, "
                    f"retrying in {delay:.1f}s (attempt {attempt}/{self.spec.retries + 1})"
                )
                if cancel_token.wait(delay):
                    return self._result(
                        ValidationStatus.ERROR,
                        [Finding(Severity.ERROR, "Validator run cancelled")],
                        tool_run.combined_output,
                        started,
                        attempt,
                    )
                continue

            return self._result(status, findings, tool_run.combined_output, started, attempt)

    def _classify(self, run: ToolRun) -> Tuple[ValidationStatus, List[Finding]]:
        if run.cancelled:
            return ValidationStatus.ERROR, [Finding(Severity.ERROR, "Validator run cancelled")]
        if run.timed_out:
            return ValidationStatus.TIMEOUT, []
        if run.returncode is None or not self.is_analyzable(run.returncode):
            return ValidationStatus.ERROR, [self._stderr_finding(run)]
        try:
            return self.interpret(run)
        except (ToolInvocationError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Validator {self.spec.name} produced unparseable output: {e}")
            return ValidationStatus.ERROR, [self._stderr_finding(run, fallback=str(e))]

    def _stderr_finding(self, run: ToolRun, fallback: Optional[str] = None) -> Finding:
        message = run.stderr.strip() or fallback or (
            f"{run.command[0] if run.command else 'tool'} exited with status {run.returncode}"
        )
        return Finding(Severity.ERROR, message)

    def _execute(
        self, artifact: Artifact, timeout: float, cancel_token: CancellationToken
    ) -> ToolRun:
        with tempfile.TemporaryDirectory(prefix="iac-pipeline-") as tmp:
            workdir = Path(tmp)
            template_path = workdir / (Path(artifact.path).name or "template")
            template_path.write_bytes(artifact.body)
            command = self.build_command(template_path, workdir)
            return run_tool(command, workdir, timeout, cancel_token)

    def _result(
        self,
        status: ValidationStatus,
        findings: List[Finding],
        raw_output: str,
        started: float,
        attempts: int,
    ) -> ValidationResult:
        return ValidationResult(
            validator=self.spec.name,
            policy=self.spec.policy,
            status=status,
            findings=tuple(findings),
            raw_output=raw_output,
            duration_seconds=round(time.monotonic() - started, 3),
            attempts=max(attempts, 1),
        )

