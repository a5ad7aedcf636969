"""Generic adapter for tools that signal pass/fail through their exit code."""
from __future__ import annotations

from pathlib import Path
from typing import List, Sequence, Tuple

from ..core.errors import ConfigurationError
from ..core.models import Finding, Severity, ValidationStatus
from .base import ToolRun, ValidatorAdapter

TEMPLATE_PLACEHOLDER = "{template}"


class CommandAdapter(ValidatorAdapter):
    """Runs a configured command; output lines become findings.

    Options:
        command: argv, ``{template}`` is replaced with the template path
        pass_codes: exit codes meaning pass (default ``[0]``)
        fail_codes: exit codes meaning fail (default ``[1]``)
    """

    @property
    def kind(self) -> str:
        return "command"

    @property
    def pass_codes(self) -> Sequence[int]:
        return tuple(self.spec.option("pass_codes", (0,)))

    @property
    def fail_codes(self) -> Sequence[int]:
        return tuple(self.spec.option("fail_codes", (1,)))

    def build_command(self, template_path: Path, workdir: Path) -> List[str]:
        command = self.spec.option("command")
        if not command:
            raise ConfigurationError(
                f"Validator '{self.spec.name}' of kind 'command' needs a 'command' option"
            )
        argv = [str(part).replace(TEMPLATE_PLACEHOLDER, str(template_path)) for part in command]
        if not any(TEMPLATE_PLACEHOLDER in str(part) for part in command):
            argv.append(str(template_path))
        return argv + list(self.spec.args)

    def is_analyzable(self, returncode: int) -> bool:
        return returncode in self.pass_codes or returncode in self.fail_codes

    def interpret(self, run: ToolRun) -> Tuple[ValidationStatus, List[Finding]]:
        passed = run.returncode in self.pass_codes
        severity = Severity.INFO if passed else Severity.ERROR
        findings = [
            Finding(severity, line.strip())
            for line in run.stdout.splitlines()
            if line.strip()
        ]
        return (ValidationStatus.PASS if passed else ValidationStatus.FAIL), findings
