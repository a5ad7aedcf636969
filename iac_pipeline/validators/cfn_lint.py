"""
cfn-lint adapter.

cfn-lint reports through a bitmask exit code: 2 for errors, 4 for warnings
and 8 for informational matches. Any other bit means the linter itself
failed and the output is not analyzable.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import List, Tuple

from ..core.errors import ToolInvocationError
from ..core.models import Finding, Severity, ValidationStatus
from .base import ToolRun, ValidatorAdapter

ERROR_BIT = 2
WARNING_BIT = 4
INFO_BIT = 8
_REPORTING_BITS = ERROR_BIT | WARNING_BIT | INFO_BIT

_LEVELS = {
    "error": Severity.ERROR,
    "warning": Severity.WARNING,
    "informational": Severity.INFO,
    "info": Severity.INFO,
}


class CfnLintAdapter(ValidatorAdapter):
    """Schema and style checks with ``cfn-lint``."""

    @property
    def kind(self) -> str:
        return "cfn_lint"

    def build_command(self, template_path: Path, workdir: Path) -> List[str]:
        executable = self.spec.option("executable", ("cfn-lint",))
        return [*executable, "--format", "json", *self.spec.args, str(template_path)]

    def is_analyzable(self, returncode: int) -> bool:
        return returncode >= 0 and returncode & ~_REPORTING_BITS == 0

    def interpret(self, run: ToolRun) -> Tuple[ValidationStatus, List[Finding]]:
        findings = self._parse(run)

        failed = bool(run.returncode & ERROR_BIT) or any(
            f.severity == Severity.ERROR for f in findings
        )
        if self.spec.option("fail_on_warnings", False) and run.returncode & WARNING_BIT:
            failed = True
        return (ValidationStatus.FAIL if failed else ValidationStatus.PASS), findings

    def _parse(self, run: ToolRun) -> List[Finding]:
        output = run.stdout.strip()
        if not output:
            if run.returncode == 0:
                return []
            raise ToolInvocationError(
                f"cfn-lint exited with {run.returncode} but printed no matches"
            )

        matches = json.loads(output)
        if not isinstance(matches, list):
            raise ToolInvocationError("cfn-lint JSON output is not a list of matches")

        findings = []
        for match in matches:
            rule = (match.get("Rule") or {}).get("Id")
            level = str(match.get("Level", "error")).lower()
            start = (match.get("Location") or {}).get("Start") or {}
            location = None
            if match.get("Filename") or start:
                location = f"{Path(match.get('Filename') or '').name}:{start.get('LineNumber', '?')}"
                if start.get("ColumnNumber") is not None:
                    location += f":{start['ColumnNumber']}"
            findings.append(
                Finding(
                    severity=_LEVELS.get(level, Severity.ERROR),
                    message=str(match.get("Message", "")).strip(),
                    location=location,
                    rule=rule,
                )
            )
        return findings
