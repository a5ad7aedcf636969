"""
Validator adapters.

Each adapter wraps one external checking tool behind the same contract:
``run(artifact) -> ValidationResult``.

Components:
    - base: ValidatorAdapter interface and the subprocess runner
    - cfn_lint: schema/style linting
    - cfn_nag: security best-practice scanning
    - taskcat: deployment simulation
    - command: generic exit-code driven tool
"""

from typing import Dict, Type

from ..core.models import ValidatorSpec
from .base import ToolRun, ValidatorAdapter, run_tool
from .cfn_lint import CfnLintAdapter
from .cfn_nag import CfnNagAdapter
from .command import CommandAdapter
from .taskcat import TaskcatAdapter

ADAPTERS: Dict[str, Type[ValidatorAdapter]] = {
    "cfn_lint": CfnLintAdapter,
    "cfn_nag": CfnNagAdapter,
    "taskcat": TaskcatAdapter,
    "command": CommandAdapter,
}


def get_adapter(spec: ValidatorSpec) -> ValidatorAdapter:
    """Factory function to get the adapter for a validator spec.

    Raises:
        ValueError: If the adapter kind is not supported
    """
    try:
        adapter_cls = ADAPTERS[spec.kind]
    except KeyError:
        raise ValueError(
            f"Unsupported validator kind: {spec.kind}. "
            f"Supported: {', '.join(sorted(ADAPTERS))}"
        )
    return adapter_cls(spec)


__all__ = [
    "ADAPTERS",
    "CfnLintAdapter",
    "CfnNagAdapter",
    "CommandAdapter",
    "TaskcatAdapter",
    "ToolRun",
    "ValidatorAdapter",
    "get_adapter",
    "run_tool",
]
