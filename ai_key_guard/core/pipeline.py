"""
Pipeline runs.

One monitoring pass, budget pass or rotation is a single unit of work
guarded by a run-level lock. Each run always produces a report, even when
part (or all) of the usage data could not be fetched.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from .aggregator import UsageSource
from .anomaly import AnomalyDetector
from .budget import BudgetMonitor
from .errors import KeyGuardError
from .reporting import ReportPublisher
from .rotation import RotationOrchestrator
from .scoring import score_findings
from ai_key_guard.clients.base import DeploymentTarget
from ai_key_guard.storage.db import DEFAULT_DB_PATH
from ai_key_guard.storage.models import (
    BudgetAlert,
    RiskAssessment,
    RotationJob,
    RotationState,
    Severity,
    UsageSnapshot,
    UsageWindow,
)
from ai_key_guard.storage.repository import RunLock, initialize_schema, insert_usage_snapshots

logger = logging.getLogger(__name__)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

MONITORING_SCOPE = "monitoring"
BUDGET_SCOPE = "budget"
ROTATION_SCOPE = "rotation"


@dataclass(frozen=True)
class MonitoringResult:
    """Outcome of one monitoring pass."""
    assessment: RiskAssessment
    snapshots: List[UsageSnapshot]
    report_path: Path
    notified: bool
    source_error: Optional[str] = None

    @property
    def unavailable(self) -> List[UsageSnapshot]:
        return [s for s in self.snapshots if not s.is_available]

    @property
    def has_critical_findings(self) -> bool:
        return any(f.severity == Severity.HIGH for f in self.assessment.findings)

    @property
    def exit_code(self) -> int:
        """0 only when nothing critical was found and every fetch succeeded."""
        if self.source_error or self.unavailable or self.has_critical_findings:
            return EXIT_CODE_FAIL
        return EXIT_CODE_PASS


@dataclass(frozen=True)
class BudgetResult:
    alerts: List[BudgetAlert]
    snapshots: List[UsageSnapshot]
    report_path: Path
    notified: bool
    source_error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        if self.source_error or any(not s.is_available for s in self.snapshots):
            return EXIT_CODE_FAIL
        if any(a.is_critical for a in self.alerts):
            return EXIT_CODE_FAIL
        return EXIT_CODE_PASS


@dataclass(frozen=True)
class RotationResult:
    job: RotationJob
    report_path: Path
    notified: bool

    @property
    def exit_code(self) -> int:
        return EXIT_CODE_PASS if self.job.state == RotationState.COMPLETED else EXIT_CODE_FAIL


def _collect(
    source: UsageSource,
    credential_ids: Optional[Sequence[str]],
    windows: Sequence[UsageWindow],
    now: datetime,
    cancel_event: Optional[threading.Event],
):
    """Fetch snapshots; a failure of the whole source yields no snapshots."""
    try:
        return source.fetch(credential_ids=credential_ids, windows=windows, now=now,
                            cancel_event=cancel_event), None
    except KeyGuardError as e:
        logger.error("Usage source failed: %s", e)
        return [], str(e)


def run_monitoring_pass(
    source: UsageSource,
    detector: AnomalyDetector,
    publisher: ReportPublisher,
    db_path: str = DEFAULT_DB_PATH,
    credential_ids: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
    run_id: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
) -> MonitoringResult:
    """Aggregate, detect, score and publish one monitoring pass.

    Args:
        source: Usage source, normally a UsageAggregator
        detector: Anomaly detector bound to the configured thresholds
        publisher: Report publisher
        db_path: SQLite path for the run lock and usage history
        credential_ids: Optional subset of credentials to check
        now: Evaluation time; defaults to the current UTC time
        run_id: Identifier of the pass; generated when omitted
        cancel_event: Cooperative cancellation for the fetch phase

    Returns:
        MonitoringResult with the assessment, snapshots and report path

    Raises:
        RunLockedError: If another monitoring pass is active
    """
    now = now or datetime.now(timezone.utc)
    run_id = run_id or uuid.uuid4().hex
    initialize_schema(db_path)

    with RunLock(MONITORING_SCOPE, db_path):
        logger.info("Monitoring pass %s started", run_id)
        snapshots, source_error = _collect(source, credential_ids, (UsageWindow.DAILY,), now, cancel_event)
        insert_usage_snapshots(run_id, snapshots, db_path)

        findings = detector.evaluate_all(snapshots, now)
        assessment = score_findings(findings, run_id, now)
        logger.info(
            "Monitoring pass %s: %d finding(s), risk %d (%s)",
            run_id, len(findings), assessment.score, assessment.level.value,
        )
        published = publisher.publish_assessment(assessment, snapshots)

    return MonitoringResult(
        assessment=assessment,
        snapshots=snapshots,
        report_path=published.report_path,
        notified=published.notified,
        source_error=source_error,
    )


def run_budget_pass(
    source: UsageSource,
    monitor: BudgetMonitor,
    publisher: ReportPublisher,
    db_path: str = DEFAULT_DB_PATH,
    credential_ids: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BudgetResult:
    """Check daily and monthly spend against the budgets and publish new alerts."""
    now = now or datetime.now(timezone.utc)
    initialize_schema(db_path)

    with RunLock(BUDGET_SCOPE, db_path):
        snapshots, source_error = _collect(
            source, credential_ids, (UsageWindow.DAILY, UsageWindow.MONTHLY), now, cancel_event
        )
        alerts = monitor.check(snapshots, now)
        published = publisher.publish_budget(alerts, snapshots, now)

    return BudgetResult(
        alerts=alerts,
        snapshots=snapshots,
        report_path=published.report_path,
        notified=published.notified,
        source_error=source_error,
    )


def run_rotation(
    orchestrator: RotationOrchestrator,
    publisher: ReportPublisher,
    old_credential_id: str,
    targets: Sequence[DeploymentTarget],
    db_path: str = DEFAULT_DB_PATH,
    name: Optional[str] = None,
    retire_old: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> RotationResult:
    """Rotate one credential across its targets and publish the outcome.

    Raises:
        RunLockedError: If another rotation is active
    """
    with RunLock(ROTATION_SCOPE, db_path):
        orchestrator.reap_abandoned()
        job = orchestrator.run(
            old_credential_id, targets, name=name, retire_old=retire_old, cancel_event=cancel_event
        )
        published = publisher.publish_rotation(job)
    return RotationResult(job=job, report_path=published.report_path, notified=published.notified)
