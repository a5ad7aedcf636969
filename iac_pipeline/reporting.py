"""
Commit status reporting.

Publishes an execution's progress as a commit status so pull requests show
whether the change passed the gates. Reporting is best effort: failures are
logged and never change an execution's outcome.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .core.models import ExecutionOutcome, PipelineExecution

logger = logging.getLogger(__name__)

# Commit status descriptions are truncated by the API beyond this length.
MAX_DESCRIPTION_LENGTH = 140

_OUTCOME_STATES = {
    ExecutionOutcome.SUCCEEDED: "success",
    ExecutionOutcome.FAILED: "failure",
    ExecutionOutcome.CANCELLED: "error",
}


def _truncate(text: str, limit: int = MAX_DESCRIPTION_LENGTH) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


class StatusReporter(ABC):
    """Abstract base class for status reporters."""

    def started(self, execution: PipelineExecution) -> None:
        self.report(execution, "pending", f"{execution.kind.value} run started")

    def finished(self, execution: PipelineExecution, description: str) -> None:
        state = _OUTCOME_STATES.get(execution.outcome, "error")
        self.report(execution, state, description)

    @abstractmethod
    def report(self, execution: PipelineExecution, state: str, description: str) -> None:
        """Publish one status for the execution's commit."""
        pass


class NullStatusReporter(StatusReporter):
    """Reporter used when no status API is configured."""

    def report(self, execution: PipelineExecution, state: str, description: str) -> None:
        logger.debug(f"Status for {execution.id}: {state} ({description})")


class GitHubStatusReporter(StatusReporter):
    """
    Posts commit statuses through the GitHub REST API.
    """

    def __init__(
        self,
        api_url: str,
        token: str,
        context: str = "iac-pipeline",
        target_url_template: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.context = context
        self.target_url_template = target_url_template
        self.client = client or httpx.Client(timeout=10.0)
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
        }

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def report(self, execution: PipelineExecution, state: str, description: str) -> None:
        source = execution.trigger.source
        payload = {
            "state": state,
            "description": _truncate(description),
            "context": self.context,
        }
        if self.target_url_template:
            payload["target_url"] = self.target_url_template.format(
                execution_id=execution.id
            )

        url = f"{self.api_url}/repos/{source.repository}/statuses/{source.commit_sha}"
        try:
            response = self.client.post(url, json=payload, headers=self.headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                f"Failed to report status '{state}' for {source.repository}@"
                f"{source.commit_sha[:12]}: {e}"
            )
            return
        logger.debug(f"Reported {state} for {source.repository}@{source.commit_sha[:12]}")
