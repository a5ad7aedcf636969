"""
taskcat adapter.

taskcat test-deploys the template into real accounts, so its runs are slow
and exposed to API throttling. Throttled runs are reported as transient
errors and retried; they never turn into a pass or a fail.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from ..core.errors import ToolInvocationError
from ..core.models import Finding, Severity, ValidationStatus
from .base import ToolRun, ValidatorAdapter

_THROTTLE_MARKERS = re.compile(
    r"Throttling|Rate exceeded|RequestLimitExceeded|TooManyRequests|SlowDown",
    re.IGNORECASE,
)
_ERROR_LINE = re.compile(r"\[ERROR\s*\]|\bCREATE_FAILED\b|\bFAILED\b")
_WARN_LINE = re.compile(r"\[WARN(ING)?\s*\]")
_ANSI = re.compile(r"\x1b\[[0-9;]*m")


class TaskcatAdapter(ValidatorAdapter):
    """Deployment simulation with ``taskcat test run``."""

    @property
    def kind(self) -> str:
        return "taskcat"

    def build_command(self, template_path: Path, workdir: Path) -> List[str]:
        project_config: Dict[str, Any] = dict(self.spec.option("project_config", {}) or {})
        if project_config:
            project = dict(project_config.get("project") or {})
            project.setdefault("template", template_path.name)
            project_config["project"] = project
            (workdir / ".taskcat.yml").write_text(
                yaml.safe_dump(project_config, sort_keys=False), encoding="utf-8"
            )
        executable = self.spec.option("executable", ("taskcat",))
        return [*executable, "test", "run", "--project-root", str(workdir), *self.spec.args]

    def is_transient(self, run: ToolRun) -> bool:
        return bool(_THROTTLE_MARKERS.search(run.combined_output))

    def interpret(self, run: ToolRun) -> Tuple[ValidationStatus, List[Finding]]:
        if self.is_transient(run):
            raise ToolInvocationError("taskcat run was throttled by the cloud provider")

        errors: List[Finding] = []
        warnings: List[Finding] = []
        for raw_line in run.combined_output.splitlines():
            line = _ANSI.sub("", raw_line).strip()
            if not line:
                continue
            if _ERROR_LINE.search(line):
                errors.append(Finding(Severity.ERROR, line))
            elif _WARN_LINE.search(line):
                warnings.append(Finding(Severity.WARNING, line))

        if run.returncode == 0:
            return ValidationStatus.PASS, warnings
        if not errors:
            raise ToolInvocationError("taskcat failed without reporting a test failure")
        return ValidationStatus.FAIL, errors + warnings
