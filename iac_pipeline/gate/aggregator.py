"""
Gate aggregation.

Runs every configured validator over a candidate artifact in parallel and
reduces their results to a single pass/fail verdict:

- overall status is ``fail`` iff at least one blocking validator did not pass
- advisory results are kept for diagnostics but never force ``fail``
- a blocking validator with no result (crashed, lost, hung) counts as failed
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence

from ..core.cancellation import NEVER_CANCELLED, CancellationToken
from ..core.models import (
    Artifact,
    Finding,
    GateStatus,
    GateVerdict,
    Severity,
    ValidationResult,
    ValidationStatus,
    ValidatorSpec,
)
from ..validators import ValidatorAdapter, get_adapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ValidatorSpec], ValidatorAdapter]

# Extra time allowed past the slowest adapter's own timeout before the
# aggregator stops waiting for it.
JOIN_GRACE_SECONDS = 10.0

TEST_STAGE = "test"


def aggregate(
    stage: str, specs: Sequence[ValidatorSpec], results: Sequence[ValidationResult]
) -> GateVerdict:
    """Reduce validator results to a verdict.

    Results for validators that are not configured are ignored; configured
    blocking validators without a result fail the gate.
    """
    by_name = {r.validator: r for r in results}
    status = GateStatus.PASS
    for spec in specs:
        if not spec.is_blocking:
            continue
        result = by_name.get(spec.name)
        if result is None or result.status != ValidationStatus.PASS:
            status = GateStatus.FAIL
            break
    return GateVerdict(stage=stage, status=status, results=tuple(results))


class GateAggregator:
    """Evaluates an ordered set of validators against an artifact."""

    def __init__(
        self,
        adapter_factory: AdapterFactory = get_adapter,
        max_workers: Optional[int] = None,
        join_grace_seconds: float = JOIN_GRACE_SECONDS,
    ):
        self.adapter_factory = adapter_factory
        self.max_workers = max_workers
        self.join_grace_seconds = join_grace_seconds

    def evaluate(
        self,
        artifact: Artifact,
        specs: Sequence[ValidatorSpec],
        stage: str = TEST_STAGE,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> GateVerdict:
        """Run all validators and return the stage verdict.

        Results are ordered as the specs were configured, whatever order the
        validators finish in.
        """
        specs = list(specs)
        if not specs:
            return aggregate(stage, specs, [])

        pool = ThreadPoolExecutor(
            max_workers=self.max_workers or len(specs),
            thread_name_prefix="validator",
        )
        try:
            futures: List[Future] = [
                pool.submit(self._run_one, spec, artifact, cancel_token) for spec in specs
            ]
            join_timeout = max(s.timeout_seconds for s in specs) + self.join_grace_seconds
            wait(futures, timeout=join_timeout)

            results: List[ValidationResult] = []
            for spec, future in zip(specs, futures):
                if future.done():
                    results.append(future.result())
                else:
                    logger.error(
                        f"Validator {spec.name} did not return within {join_timeout:.0f}s; "
                        f"recording timeout"
                    )
                    results.append(_synthetic_result(spec, ValidationStatus.TIMEOUT))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        verdict = aggregate(stage, specs, results)
        logger.info(
            f"Gate '{stage}' verdict: {verdict.status.value} "
            f"({len(verdict.blocking_failures())} blocking, "
            f"{len(verdict.advisory_failures())} advisory failures)"
        )
        return verdict

    def _run_one(
        self, spec: ValidatorSpec, artifact: Artifact, cancel_token: CancellationToken
    ) -> ValidationResult:
        try:
            adapter = self.adapter_factory(spec)
            result = adapter.run(artifact, cancel_token)
        except Exception as e:
            logger.exception(f"Validator {spec.name} raised during invocation: {e}")
            return _synthetic_result(
                spec,
                ValidationStatus.ERROR,
                Finding(Severity.ERROR, f"Validator invocation failed: {e}"),
            )
        # The configured ValidatorSpec is authoritative for identity and policy.
        if result.validator != spec.name or result.policy != spec.policy:
            result = replace(result, validator=spec.name, policy=spec.policy)
        return result


def _synthetic_result(
    spec: ValidatorSpec, status: ValidationStatus, finding: Optional[Finding] = None
) -> ValidationResult:
    return ValidationResult(
        validator=spec.name,
        policy=spec.policy,
        status=status,
        findings=(finding,) if finding else (),
    )


def summarize(verdict: GateVerdict, limit: int = 140) -> str:
    """Short human-readable summary of a verdict for status checks."""
    if verdict.passed:
        passed = sum(1 for r in verdict.results if r.passed)
        text = f"All blocking checks passed ({passed}/{len(verdict.results)} validators clean)"
        advisory = verdict.advisory_failures()
        if advisory:
            text += f"; advisory issues: {', '.join(r.validator for r in advisory)}"
    else:
        parts = []
        for result in verdict.blocking_failures():
            first = next(
                (f for f in result.findings if f.severity == Severity.ERROR),
                result.findings[0] if result.findings else None,
            )
            detail = f": {first.message}" if first else ""
            parts.append(f"{result.validator} {result.status.value}{detail}")
        text = "; ".join(parts) or "Gate failed"
    return text if len(text) <= limit else text[: limit - 3] + "..."


def verdict_stats(verdict: GateVerdict) -> Dict[str, int]:
    stats: Dict[str, int] = {status.value: 0 for status in ValidationStatus}
    for result in verdict.results:
        stats[result.status.value] += 1
    return stats
