"""
Report and alert publishing.

Every run is written to disk first as an immutable JSON document; the
human-readable summary is pushed to the notification channel afterwards.
The persisted report is the source of truth: a failed notification never
rewrites or removes it.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .errors import TransientIOError
from .retry import retry_call
from ai_key_guard.clients.base import NotificationChannel
from ai_key_guard.storage.models import (
    BudgetAlert,
    FindingType,
    RiskAssessment,
    RiskLevel,
    RotationJob,
    RotationState,
    TargetStatus,
    UsageSnapshot,
)

logger = logging.getLogger(__name__)

LEVEL_RECOMMENDATIONS: Dict[RiskLevel, List[str]] = {
    RiskLevel.CRITICAL: [
        "CRITICAL: Immediate action required - consider rotating all credentials",
        "Investigate all detected anomalies immediately",
        "Implement additional security controls",
    ],
    RiskLevel.HIGH: [
        "HIGH RISK: Review and address anomalies promptly",
        "Consider rotating affected credentials",
        "Increase monitoring frequency",
    ],
    RiskLevel.MEDIUM: [
        "MEDIUM RISK: Monitor closely and address anomalies",
        "Review usage patterns for affected credentials",
    ],
    RiskLevel.LOW: [
        "LOW RISK: Continue regular monitoring",
    ],
}

FINDING_RECOMMENDATIONS: Dict[FindingType, str] = {
    FindingType.MULTI_ORIGIN: "Investigate credential sharing - consider implementing IP restrictions",
    FindingType.EXPENSIVE_MODEL_CONCENTRATION: "Review model usage costs and implement spending limits",
    FindingType.RAPID_VOLUME: "Implement rate limiting to prevent abuse",
    FindingType.APPROACHING_LIMIT: "Rotate or re-limit credentials close to their spending limit",
}


@dataclass(frozen=True)
class PublishResult:
    """Where a report was written and whether its summary got through."""
    report_path: Path
    notified: bool


def generate_recommendations(assessment: RiskAssessment, unavailable: int = 0) -> List[str]:
    """Level-based advice followed by advice per finding type present."""
    recommendations = list(LEVEL_RECOMMENDATIONS[assessment.level])
    present = {f.type for f in assessment.findings}
    for finding_type, advice in FINDING_RECOMMENDATIONS.items():
        if finding_type in present:
            recommendations.append(advice)
    if unavailable:
        recommendations.append(
            f"Usage data unavailable for {unavailable} credential(s) - verify issuer access and rerun"
        )
    return recommendations


def build_assessment_report(assessment: RiskAssessment, snapshots: Sequence[UsageSnapshot]) -> Dict:
    """Build the persisted document for a monitoring pass."""
    unavailable = {s.credential_id for s in snapshots if not s.is_available}
    return {
        "timestamp": assessment.timestamp.isoformat(),
        "run_id": assessment.run_id,
        "summary": {
            "total_credentials": len({s.credential_id for s in snapshots}),
            "anomalies_detected": len(assessment.findings),
            "risk_score": assessment.score,
            "risk_level": assessment.level.value,
            "data_unavailable": len(unavailable),
        },
        "findings": [f.to_dict() for f in assessment.findings],
        "usage_snapshots": [s.to_dict() for s in snapshots],
        "recommendations": generate_recommendations(assessment, len(unavailable)),
    }


def build_rotation_report(job: RotationJob, timestamp: datetime) -> Dict:
    recommendations = []
    if job.state == RotationState.COMPLETED and not job.old_retired:
        recommendations.append(
            f"Retire the old credential {job.old_credential_id} once consumers are confirmed healthy"
        )
    failed = job.targets_in(TargetStatus.FAILED)
    if failed:
        recommendations.append(f"Manually check targets: {', '.join(failed)}")
    if job.state == RotationState.FAILED:
        recommendations.append("Rotation did not start; fix the cause and rerun")

    return {
        "timestamp": timestamp.isoformat(),
        "summary": {
            "state": job.state.value,
            "targets": len(job.target_status),
            "verified": len(job.targets_in(TargetStatus.VERIFIED)),
            "failed": len(failed),
            "reverted": len(job.targets_in(TargetStatus.REVERTED)),
        },
        "rotation": job.to_dict(),
        "recommendations": recommendations,
    }


def build_budget_report(alerts: Sequence[BudgetAlert], snapshots: Sequence[UsageSnapshot],
                        timestamp: datetime) -> Dict:
    exceeded = [a for a in alerts if a.is_critical]
    recommendations = []
    if exceeded:
        recommendations.append("Budget exceeded - lower credential limits or pause non-critical workloads")
    elif alerts:
        recommendations.append("Budget watermark crossed - review spend trends")
    else:
        recommendations.append("Spend within budget")
    return {
        "timestamp": timestamp.isoformat(),
        "summary": {
            "total_credentials": len({s.credential_id for s in snapshots}),
            "alerts": len(alerts),
            "exceeded": len(exceeded),
        },
        "budget_alerts": [a.to_dict() for a in alerts],
        "usage_snapshots": [s.to_dict() for s in snapshots],
        "recommendations": recommendations,
    }


def _format_assessment(assessment: RiskAssessment, report: Dict) -> str:
    summary = report["summary"]
    lines = [
        f"*Risk score:* {assessment.score} ({assessment.level.value})",
        f"*Credentials:* {summary['total_credentials']} "
        f"({summary['data_unavailable']} without data)",
        f"*Anomalies:* {summary['anomalies_detected']}",
    ]
    for finding in assessment.findings[:10]:
        lines.append(f"- [{finding.severity.value}] {finding.type.value}: {finding.description}")
    if len(assessment.findings) > 10:
        lines.append(f"... and {len(assessment.findings) - 10} more")
    return "\n".join(lines)


def _format_rotation(job: RotationJob) -> str:
    lines = [
        f"*Job:* {job.id}",
        f"*Old credential:* {job.old_credential_id}",
        f"*New credential:* {job.new_credential_id or '-'}",
    ]
    for target_id, status in sorted(job.target_status.items()):
        error = job.target_errors.get(target_id)
        lines.append(f"- {target_id}: {status.value}" + (f" ({error})" if error else ""))
    if job.error:
        lines.append(f"*Error:* {job.error}")
    return "\n".join(lines)


class ReportPublisher:
    """Persists run reports and pushes their summaries."""

    def __init__(
        self,
        report_dir: str,
        channel: Optional[NotificationChannel] = None,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.report_dir = Path(report_dir)
        self.channel = channel
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self._sleep = sleep

    def write_report(self, report: Dict, kind: str, timestamp: datetime) -> Path:
        """Write a report with exclusive create and make it read-only.

        The file name carries the ISO timestamp; a numeric suffix is added
        when two reports share a timestamp, so nothing is ever overwritten.
        """
        self.report_dir.mkdir(parents=True, exist_ok=True)
        stamp = timestamp.astimezone(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        content = json.dumps(report, indent=2, sort_keys=False)

        suffix = 0
        while True:
            name = f"{kind}-report-{stamp}" + (f"-{suffix}" if suffix else "") + ".json"
            path = self.report_dir / name
            try:
                with open(path, "x", encoding="utf-8") as f:
                    f.write(content)
                break
            except FileExistsError:
                suffix += 1

        os.chmod(path, 0o444)
        logger.info("Report saved: %s", path)
        return path

    def notify(self, title: str, body: str) -> bool:
        """Send a summary, retrying with backoff. Returns delivery success."""
        if self.channel is None:
            return False

        def send() -> None:
            if not self.channel.send(title, body):
                raise TransientIOError("notification channel reported failure")

        try:
            retry_call(
                send,
                attempts=self.max_attempts,
                base_delay=self.backoff_base_seconds,
                sleep=self._sleep,
                description=f"notify '{title}'",
            )
        except TransientIOError as e:
            logger.error("Notification '%s' not delivered: %s", title, e)
            return False
        except Exception:
            logger.exception("Notification channel raised while sending '%s'", title)
            return False
        return True

    def publish_assessment(self, assessment: RiskAssessment,
                           snapshots: Sequence[UsageSnapshot]) -> PublishResult:
        """Persist a monitoring report, then push its summary.

        Args:
            assessment: Risk assessment of the pass
            snapshots: Every snapshot of the pass, including unavailable ones

        Returns:
            PublishResult with the report path and delivery status
        """
        report = build_assessment_report(assessment, snapshots)
        path = self.write_report(report, "anomaly", assessment.timestamp)
        notified = self.notify(
            f"Credential security report: {assessment.level.value}",
            _format_assessment(assessment, report),
        )
        return PublishResult(report_path=path, notified=notified)

    def publish_rotation(self, job: RotationJob, timestamp: Optional[datetime] = None) -> PublishResult:
        timestamp = timestamp or job.completed_at or datetime.now(timezone.utc)
        path = self.write_report(build_rotation_report(job, timestamp), "rotation", timestamp)
        notified = self.notify(f"Credential rotation {job.state.value}", _format_rotation(job))
        return PublishResult(report_path=path, notified=notified)

    def publish_budget(self, alerts: Sequence[BudgetAlert], snapshots: Sequence[UsageSnapshot],
                       timestamp: datetime) -> PublishResult:
        """Persist a budget report; a summary is pushed only for new alerts."""
        path = self.write_report(build_budget_report(alerts, snapshots, timestamp), "budget", timestamp)
        if not alerts:
            return PublishResult(report_path=path, notified=False)
        title = "Budget exceeded" if any(a.is_critical for a in alerts) else "Budget warning"
        notified = self.notify(title, "\n".join(f"- {a.message}" for a in alerts))
        return PublishResult(report_path=path, notified=notified)
