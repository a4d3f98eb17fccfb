"""
Risk scoring.

Folds the findings of one run into a bounded score and a risk level.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Sequence

from ai_key_guard.storage.models import CredentialRisk, Finding, RiskAssessment, RiskLevel, Severity

SEVERITY_WEIGHTS: Dict[Severity, int] = {
    Severity.HIGH: 30,
    Severity.MEDIUM: 15,
    Severity.LOW: 5,
}

MAX_SCORE = 100


def score(findings: Sequence[Finding]) -> int:
    """Sum of severity weights, clamped to [0, 100]."""
    total = sum(SEVERITY_WEIGHTS[f.severity] for f in findings)
    return max(0, min(MAX_SCORE, total))


def level_for_score(value: int) -> RiskLevel:
    """Map a score to a level: >70 CRITICAL, >40 HIGH, >20 MEDIUM, else LOW."""
    if value > 70:
        return RiskLevel.CRITICAL
    if value > 40:
        return RiskLevel.HIGH
    if value > 20:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def score_findings(findings: Sequence[Finding], run_id: str, timestamp: datetime) -> RiskAssessment:
    """Aggregate one run's findings into a RiskAssessment.

    The per-credential breakdown keeps every finding attributed to its
    credential, so nothing is lost by aggregating.
    """
    by_credential: Dict[str, List[Finding]] = OrderedDict()
    for finding in findings:
        by_credential.setdefault(finding.credential_id, []).append(finding)

    total = score(findings)
    return RiskAssessment(
        run_id=run_id,
        score=total,
        level=level_for_score(total),
        findings=tuple(findings),
        timestamp=timestamp,
        per_credential={
            cid: CredentialRisk(credential_id=cid, score=score(items), findings=tuple(items))
            for cid, items in by_credential.items()
        },
    )
