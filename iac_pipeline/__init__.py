"""
IaC Pipeline

Continuous delivery for infrastructure-as-code templates: webhook triggers,
validation gates and permission-checked deployments.
"""

import importlib.metadata

__version__ = importlib.metadata.version("iac-pipeline")
