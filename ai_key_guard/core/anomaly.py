"""
Anomaly detection for credential usage.

Evaluates one usage snapshot against independent heuristic rules. The
evaluation is pure: the same snapshot, thresholds and ``now`` always yield
the same findings.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ai_key_guard.config.loader import DetectionThresholds
from ai_key_guard.storage.models import Finding, FindingType, Severity, UsageSnapshot

logger = logging.getLogger(__name__)

LIMIT_WARNING_RATIO = 0.75
LIMIT_CRITICAL_RATIO = 0.90

Rule = Callable[[UsageSnapshot, datetime, DetectionThresholds], Optional[Finding]]


def _label(snapshot: UsageSnapshot) -> str:
    if snapshot.credential_name:
        return f"{snapshot.credential_name} ({snapshot.credential_id})"
    return snapshot.credential_id


def _rapid_volume(snapshot: UsageSnapshot, now: datetime, thresholds: DetectionThresholds) -> Optional[Finding]:
    if snapshot.request_count <= thresholds.rapid_requests:
        return None
    return Finding(
        type=FindingType.RAPID_VOLUME,
        severity=Severity.HIGH,
        credential_id=snapshot.credential_id,
        description=(
            f"{_label(snapshot)} made {snapshot.request_count:,} requests "
            f"(threshold: {thresholds.rapid_requests:,})"
        ),
        recommendation="Investigate for potential abuse or automated attacks",
    )


def _burst_tokens(snapshot: UsageSnapshot, now: datetime, thresholds: DetectionThresholds) -> Optional[Finding]:
    if snapshot.token_count <= thresholds.burst_tokens:
        return None
    return Finding(
        type=FindingType.BURST_TOKENS,
        severity=Severity.MEDIUM,
        credential_id=snapshot.credential_id,
        description=(
            f"{_label(snapshot)} used {snapshot.token_count:,} tokens in the {snapshot.window.value} window "
            f"(threshold: {thresholds.burst_tokens:,})"
        ),
        recommendation="Monitor for unusual usage patterns",
    )


def _off_hours(snapshot: UsageSnapshot, now: datetime, thresholds: DetectionThresholds) -> Optional[Finding]:
    quiet = thresholds.off_hours
    if not quiet.contains(now.hour) or snapshot.request_count <= quiet.min_requests:
        return None
    return Finding(
        type=FindingType.OFF_HOURS,
        severity=Severity.LOW,
        credential_id=snapshot.credential_id,
        description=(
            f"{_label(snapshot)} active during quiet hours "
            f"{quiet.start_hour:02d}:00-{quiet.end_hour:02d}:00 ({snapshot.request_count:,} requests)"
        ),
        recommendation="Verify legitimate usage during off-hours",
    )


def _expensive_models(snapshot: UsageSnapshot, now: datetime, thresholds: DetectionThresholds) -> Optional[Finding]:
    total = sum(snapshot.model_requests.values())
    if total <= 0:
        return None
    expensive = set(thresholds.expensive_models)
    expensive_requests = sum(
        count for model, count in snapshot.model_requests.items() if model in expensive
    )
    share = expensive_requests / total
    if share <= thresholds.expensive_model_share:
        return None
    return Finding(
        type=FindingType.EXPENSIVE_MODEL_CONCENTRATION,
        severity=Severity.HIGH,
        credential_id=snapshot.credential_id,
        description=(
            f"{_label(snapshot)} sent {share:.0%} of {total:,} requests to expensive models "
            f"(threshold: {thresholds.expensive_model_share:.0%})"
        ),
        recommendation="Review model usage costs and implement spending limits",
    )


def _multi_origin(snapshot: UsageSnapshot, now: datetime, thresholds: DetectionThresholds) -> Optional[Finding]:
    if len(snapshot.origins) <= thresholds.max_origins:
        return None
    return Finding(
        type=FindingType.MULTI_ORIGIN,
        severity=Severity.HIGH,
        credential_id=snapshot.credential_id,
        description=(
            f"{_label(snapshot)} used from {len(snapshot.origins)} distinct origins "
            f"(threshold: {thresholds.max_origins})"
        ),
        recommendation="Investigate potential key sharing or compromise; consider IP restrictions",
    )


def _suspicious_client(snapshot: UsageSnapshot, now: datetime, thresholds: DetectionThresholds) -> Optional[Finding]:
    client = snapshot.client_id.lower()
    if not client:
        return None
    matched = [sig for sig in thresholds.client_denylist if sig.lower() in client]
    if not matched:
        return None
    return Finding(
        type=FindingType.SUSPICIOUS_CLIENT,
        severity=Severity.MEDIUM,
        credential_id=snapshot.credential_id,
        description=f"{_label(snapshot)} called by suspicious client '{snapshot.client_id}'",
        recommendation="Verify legitimate API usage",
    )


def _approaching_limit(snapshot: UsageSnapshot, now: datetime, thresholds: DetectionThresholds) -> Optional[Finding]:
    if not snapshot.limit or snapshot.limit <= 0:
        return None
    ratio = snapshot.cost / snapshot.limit
    if ratio >= LIMIT_CRITICAL_RATIO:
        severity = Severity.HIGH
    elif ratio >= LIMIT_WARNING_RATIO:
        severity = Severity.MEDIUM
    else:
        return None
    return Finding(
        type=FindingType.APPROACHING_LIMIT,
        severity=severity,
        credential_id=snapshot.credential_id,
        description=(
            f"{_label(snapshot)} has used {ratio:.1%} of its limit "
            f"(${snapshot.cost:,.2f} of ${snapshot.limit:,.2f})"
        ),
        recommendation="Raise the limit deliberately or rotate to a fresh credential",
    )


# Evaluation order is fixed so findings come out in a stable order
RULES: Tuple[Rule, ...] = (
    _rapid_volume,
    _burst_tokens,
    _off_hours,
    _expensive_models,
    _multi_origin,
    _suspicious_client,
    _approaching_limit,
)

# Only these rules apply to disabled credentials
DISABLED_CREDENTIAL_RULES: Tuple[Rule, ...] = (_approaching_limit,)


def evaluate(snapshot: UsageSnapshot, now: datetime, thresholds: DetectionThresholds) -> List[Finding]:
    """Evaluate a snapshot against every anomaly rule.

    Rules:
    - rapid-volume (HIGH): request_count > rapid_requests
    - burst-tokens (MEDIUM): token_count > burst_tokens
    - off-hours (LOW): ``now`` inside quiet hours and request_count > min_requests
    - expensive-model-concentration (HIGH): expensive share > expensive_model_share
    - multi-origin (HIGH): distinct origins > max_origins
    - suspicious-client (MEDIUM): client id contains a denylisted signature
    - approaching-limit: cost/limit >= 75% (MEDIUM) or >= 90% (HIGH)

    Each rule runs on its own; an error in one is logged and does not
    suppress the others.

    Args:
        snapshot: Usage snapshot to evaluate
        now: Evaluation time, used by the off-hours rule
        thresholds: Rule thresholds

    Returns:
        List of findings (empty if none)
    """
    if not snapshot.is_available:
        return []

    rules = DISABLED_CREDENTIAL_RULES if snapshot.disabled else RULES
    findings = []
    for rule in rules:
        try:
            finding = rule(snapshot, now, thresholds)
        except Exception:
            logger.exception("Rule %s failed for %s", rule.__name__, snapshot.credential_id)
            continue
        if finding is not None:
            findings.append(finding)
    return findings


class AnomalyDetector:
    """Anomaly rules bound to one set of thresholds."""

    def __init__(self, thresholds: DetectionThresholds):
        self.thresholds = thresholds

    def evaluate(self, snapshot: UsageSnapshot, now: datetime) -> List[Finding]:
        return evaluate(snapshot, now, self.thresholds)

    def evaluate_all(self, snapshots: List[UsageSnapshot], now: datetime) -> List[Finding]:
        findings = []
        for snapshot in snapshots:
            findings.extend(self.evaluate(snapshot, now))
        return findings
