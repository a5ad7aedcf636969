"""
Pipeline execution.

Components:
    - state_machine: drives executions through sourcing, testing and deploy
    - locks: per-environment deployment locks
"""

from .locks import ConflictPolicy, EnvironmentLocks
from .state_machine import (
    TRANSITIONS,
    DeployStage,
    ExecutionRecorder,
    InMemoryRecorder,
    PipelineStateMachine,
    transition,
)

__all__ = [
    "TRANSITIONS",
    "ConflictPolicy",
    "DeployStage",
    "EnvironmentLocks",
    "ExecutionRecorder",
    "InMemoryRecorder",
    "PipelineStateMachine",
    "transition",
]
