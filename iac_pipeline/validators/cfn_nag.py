"""
cfn_nag adapter.

``cfn_nag_scan`` exits with the number of failing violations, so the exit
code alone cannot tell a scan failure from a crash; the JSON report decides.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import List, Tuple

from ..core.errors import ToolInvocationError
from ..core.models import Finding, Severity, ValidationStatus
from .base import ToolRun, ValidatorAdapter


class CfnNagAdapter(ValidatorAdapter):
    """Security best-practice scan with ``cfn_nag_scan``."""

    @property
    def kind(self) -> str:
        return "cfn_nag"

    def build_command(self, template_path: Path, workdir: Path) -> List[str]:
        executable = self.spec.option("executable", ("cfn_nag_scan",))
        return [
            *executable,
            "--output-format",
            "json",
            *self.spec.args,
            "--input-path",
            str(template_path),
        ]

    def is_analyzable(self, returncode: int) -> bool:
        return returncode >= 0

    def interpret(self, run: ToolRun) -> Tuple[ValidationStatus, List[Finding]]:
        try:
            report = json.loads(run.stdout)
        except ValueError:
            raise ToolInvocationError("cfn_nag did not produce a JSON report")
        if isinstance(report, dict):
            report = [report]
        if not isinstance(report, list) or not report:
            raise ToolInvocationError("cfn_nag report is empty")

        findings: List[Finding] = []
        failure_count = 0
        for entry in report:
            results = entry["file_results"]
            failure_count += int(results.get("failure_count", 0))
            for violation in results.get("violations", []):
                findings.extend(self._violation_findings(violation))

        fail_on_warnings = self.spec.option("fail_on_warnings", False)
        failed = failure_count > 0 or any(
            f.severity == Severity.ERROR
            or (fail_on_warnings and f.severity == Severity.WARNING)
            for f in findings
        )
        return (ValidationStatus.FAIL if failed else ValidationStatus.PASS), findings

    def _violation_findings(self, violation: dict) -> List[Finding]:
        severity = Severity.ERROR if violation.get("type") == "FAIL" else Severity.WARNING
        resource_ids = violation.get("logical_resource_ids") or [None]
        line_numbers = violation.get("line_numbers") or []
        findings = []
        for index, resource_id in enumerate(resource_ids):
            location = resource_id
            if index < len(line_numbers) and line_numbers[index] not in (None, -1):
                location = f"{resource_id or 'template'}:{line_numbers[index]}"
            findings.append(
                Finding(
                    severity=severity,
                    message=str(violation.get("message", "")).strip(),
                    location=location,
                    rule=violation.get("id"),
                )
            )
        return findings
