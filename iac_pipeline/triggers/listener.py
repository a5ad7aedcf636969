"""
Trigger listener.

Turns authenticated source-control webhooks into trigger decisions:

- ``push`` to the integration branch starts a full execution
- ``pull_request`` opened, synchronized or reopened against the base branch
  starts a pre-merge execution
- everything else is acknowledged and ignored

The signature is checked before the body is parsed; an event that fails
verification never produces a decision.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog

from ..core.errors import MalformedTrigger
from ..core.models import ExecutionKind, SourceRef, TriggerEvent
from .signature import verify_signature

logger = structlog.get_logger()

EVENT_HEADER = "x-github-event"
SIGNATURE_HEADER = "x-hub-signature-256"
DELIVERY_HEADER = "x-github-delivery"

PULL_REQUEST_ACTIONS = frozenset({"opened", "synchronize", "reopened"})

_NULL_SHA = "0" * 40


@dataclass(frozen=True)
class TriggerDecision:
    """What to do about one inbound event."""

    accepted: bool
    reason: str
    event: Optional[TriggerEvent] = None
    kind: Optional[ExecutionKind] = None

    @classmethod
    def ignore(cls, reason: str) -> "TriggerDecision":
        return cls(accepted=False, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reason": self.reason,
            "kind": self.kind.value if self.kind else None,
            "event": self.event.to_dict() if self.event else None,
        }


class TriggerListener:
    """Decides which webhooks start executions.

    Args:
        secret: Shared webhook secret for HMAC verification
        integration_branch: Branch (fnmatch pattern) whose pushes deploy
        base_branch: Pull request base (fnmatch pattern) that gets pre-merge
            checks; defaults to the integration branch
        repositories: Optional allowlist of ``owner/name`` repositories
    """

    def __init__(
        self,
        secret: Optional[str],
        integration_branch: str = "main",
        base_branch: Optional[str] = None,
        repositories: Optional[Iterable[str]] = None,
    ):
        self.secret = secret
        self.integration_branch = integration_branch
        self.base_branch = base_branch or integration_branch
        self.repositories = frozenset(repositories) if repositories else None

    def handle(self, headers: Mapping[str, str], body: bytes) -> TriggerDecision:
        """Verify and classify one webhook delivery.

        Raises:
            TriggerAuthenticationFailure: signature missing or wrong
            MalformedTrigger: authenticated but unparseable event
        """
        headers = {k.lower(): v for k, v in headers.items()}
        verify_signature(headers.get(SIGNATURE_HEADER), body, self.secret)

        event_type = headers.get(EVENT_HEADER)
        if not event_type:
            raise MalformedTrigger(f"Missing {EVENT_HEADER} header")
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise MalformedTrigger(f"Body is not valid JSON: {e}")
        if not isinstance(payload, dict):
            raise MalformedTrigger("Body must be a JSON object")

        delivery_id = headers.get(DELIVERY_HEADER)
        log = logger.bind(event_type=event_type, delivery_id=delivery_id)

        if event_type == "ping":
            log.info("trigger_ping")
            return TriggerDecision.ignore("ping")

        repository = _get(payload, "repository", "full_name")
        if not isinstance(repository, str):
            raise MalformedTrigger("Payload has no repository.full_name")
        if self.repositories is not None and repository not in self.repositories:
            log.info("trigger_ignored", repository=repository, reason="repository")
            return TriggerDecision.ignore(f"repository {repository} not allowed")

        if event_type == "push":
            decision = self._push(payload, repository, delivery_id)
        elif event_type == "pull_request":
            decision = self._pull_request(payload, repository, delivery_id)
        else:
            decision = TriggerDecision.ignore(f"unhandled event {event_type}")

        if decision.accepted:
            log.info(
                "trigger_accepted",
                kind=decision.kind.value,
                repository=repository,
                commit_sha=decision.event.source.commit_sha,
            )
        else:
            log.info("trigger_ignored", repository=repository, reason=decision.reason)
        return decision

    def _push(
        self, payload: Dict[str, Any], repository: str, delivery_id: Optional[str]
    ) -> TriggerDecision:
        ref = payload.get("ref")
        if not isinstance(ref, str) or not ref.startswith("refs/heads/"):
            return TriggerDecision.ignore(f"push to non-branch ref {ref}")
        branch = ref[len("refs/heads/"):]
        after = payload.get("after")
        if payload.get("deleted") or after == _NULL_SHA:
            return TriggerDecision.ignore(f"branch {branch} deleted")
        if not fnmatchcase(branch, self.integration_branch):
            return TriggerDecision.ignore(f"branch {branch} is not the integration branch")
        if not isinstance(after, str) or not after:
            raise MalformedTrigger("Push payload has no 'after' commit")

        event = TriggerEvent(
            event_type="push",
            source=SourceRef(repository=repository, branch=branch, commit_sha=after),
            delivery_id=delivery_id,
            sender=_get(payload, "sender", "login"),
        )
        return TriggerDecision(
            accepted=True, reason="push", event=event, kind=ExecutionKind.FULL
        )

    def _pull_request(
        self, payload: Dict[str, Any], repository: str, delivery_id: Optional[str]
    ) -> TriggerDecision:
        action = payload.get("action")
        if action not in PULL_REQUEST_ACTIONS:
            return TriggerDecision.ignore(f"pull_request action {action}")
        base = _get(payload, "pull_request", "base", "ref")
        if not isinstance(base, str) or not fnmatchcase(base, self.base_branch):
            return TriggerDecision.ignore(f"pull request base {base} not watched")

        head_sha = _get(payload, "pull_request", "head", "sha")
        head_ref = _get(payload, "pull_request", "head", "ref")
        number = payload.get("number", _get(payload, "pull_request", "number"))
        if not isinstance(head_sha, str) or not isinstance(head_ref, str):
            raise MalformedTrigger("Pull request payload has no head sha/ref")

        event = TriggerEvent(
            event_type="pull_request",
            action=action,
            source=SourceRef(
                repository=repository,
                branch=head_ref,
                commit_sha=head_sha,
                pull_request=int(number) if number is not None else None,
            ),
            delivery_id=delivery_id,
            sender=_get(payload, "sender", "login"),
        )
        return TriggerDecision(
            accepted=True,
            reason=f"pull_request {action}",
            event=event,
            kind=ExecutionKind.PRE_MERGE,
        )


def _get(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data
