"""
Database package for the IaC pipeline service.
"""

from .audit_models import ExecutionAuditModel
from .base import Base, get_db, get_engine, get_session_local, init_database
from .models import GateVerdictModel, PipelineExecutionModel, ValidationResultModel

__all__ = [
    "ExecutionAuditModel",
    "Base",
    "GateVerdictModel",
    "PipelineExecutionModel",
    "ValidationResultModel",
    "get_db",
    "get_engine",
    "get_session_local",
    "init_database",
]
