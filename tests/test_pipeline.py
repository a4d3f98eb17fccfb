"""
Integration tests for pipeline runs.

Wires the real aggregator, detector, monitor and publisher to in-memory
collaborators and a temporary SQLite store.
"""

import json
import os
import tempfile

import httpx
import pytest

from ai_key_guard.clients.base import RawUsage
from ai_key_guard.clients.openrouter import OpenRouterIssuer
from ai_key_guard.config.loader import RotationConfig
from ai_key_guard.core.aggregator import UsageAggregator
from ai_key_guard.core.anomaly import AnomalyDetector
from ai_key_guard.core.budget import BudgetMonitor
from ai_key_guard.core.errors import KeyGuardError, RunLockedError
from ai_key_guard.core.pipeline import (
    EXIT_CODE_FAIL,
    EXIT_CODE_PASS,
    MONITORING_SCOPE,
    run_budget_pass,
    run_monitoring_pass,
    run_rotation,
)
from ai_key_guard.core.reporting import ReportPublisher
from ai_key_guard.core.rotation import RotationOrchestrator
from ai_key_guard.storage.models import Budget, BudgetScope, FindingType, RotationState, Severity, UsageWindow
from ai_key_guard.storage.repository import (
    RotationJobRepository,
    RunLock,
    WatermarkRepository,
    count_usage_snapshots,
)
from tests.fakes import (
    NOW,
    OLD_VALUE,
    FakeIssuer,
    FakeTarget,
    RecordingChannel,
    make_credential,
    make_thresholds,
    no_sleep,
)


class BrokenSource:
    def fetch(self, credential_ids=None, windows=(UsageWindow.DAILY,), now=None, cancel_event=None):
        raise KeyGuardError("issuer unreachable")


class PipelineTestCase:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.report_dir = os.path.join(self.temp_dir, "reports")
        self.channel = RecordingChannel()
        self.publisher = ReportPublisher(self.report_dir, self.channel, sleep=no_sleep)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _aggregator(self, issuer: FakeIssuer) -> UsageAggregator:
        return UsageAggregator(issuer, sleep=no_sleep)


class TestMonitoringPass(PipelineTestCase):
    """Test monitoring passes end to end."""

    def test_rapid_volume_scenario(self):
        """One credential at 5000 requests: one HIGH finding, score 30."""
        issuer = FakeIssuer(
            credentials=[make_credential("key-1")],
            usage={"key-1": RawUsage(request_count=5000, token_count=1000, cost=1.0)},
        )

        result = run_monitoring_pass(
            self._aggregator(issuer), AnomalyDetector(make_thresholds()), self.publisher,
            db_path=self.db_path, now=NOW,
        )

        findings = result.assessment.findings
        assert len(findings) == 1
        assert findings[0].type == FindingType.RAPID_VOLUME
        assert findings[0].severity == Severity.HIGH
        assert result.assessment.score == 30
        assert result.has_critical_findings
        assert result.exit_code == EXIT_CODE_FAIL

    def test_partial_failure_scenario(self):
        """1 of 10 fetches fails: 10 report entries, one unavailable, score from the other 9."""
        credentials = [make_credential(f"key-{i}") for i in range(1, 11)]
        usage = {f"key-{i}": RawUsage(request_count=200, token_count=100, cost=0.5) for i in range(1, 11)}
        issuer = FakeIssuer(
            credentials=credentials,
            usage=usage,
            failures={"key-7": KeyGuardError("usage endpoint returned 500")},
        )

        result = run_monitoring_pass(
            self._aggregator(issuer), AnomalyDetector(make_thresholds()), self.publisher,
            db_path=self.db_path, now=NOW, run_id="run-d",
        )

        report = json.loads(result.report_path.read_text(encoding="utf-8"))
        entries = report["usage_snapshots"]
        assert len(entries) == 10
        assert [e["credential_id"] for e in entries if e["data_unavailable"]] == ["key-7"]
        assert report["summary"]["total_credentials"] == 10
        assert report["summary"]["anomalies_detected"] == 9
        assert {f["credential_id"] for f in report["findings"]} == {
            f"key-{i}" for i in range(1, 11) if i != 7
        }
        assert result.assessment.score == 100
        assert result.exit_code == EXIT_CODE_FAIL
        assert count_usage_snapshots("run-d", self.db_path) == 10

    def test_clean_pass_exits_zero(self):
        issuer = FakeIssuer(
            credentials=[make_credential("key-1"), make_credential("key-2")],
            usage={"key-1": RawUsage(10, 100, 0.1), "key-2": RawUsage(5, 50, 0.05)},
        )

        result = run_monitoring_pass(
            self._aggregator(issuer), AnomalyDetector(make_thresholds()), self.publisher,
            db_path=self.db_path, now=NOW,
        )

        assert result.assessment.findings == ()
        assert result.exit_code == EXIT_CODE_PASS
        assert len(self.channel.messages) == 1

    def test_broken_source_still_emits_report(self):
        result = run_monitoring_pass(
            BrokenSource(), AnomalyDetector(make_thresholds()), self.publisher,
            db_path=self.db_path, now=NOW,
        )

        assert result.source_error == "issuer unreachable"
        assert result.report_path.exists()
        assert result.exit_code == EXIT_CODE_FAIL

    def test_malformed_listing_still_emits_report(self):
        def handler(request):
            return httpx.Response(200, json={"data": [{"hash": "key-1", "created_at": "not-a-date"}]})

        client = httpx.Client(base_url="https://openrouter.test/api/v1", transport=httpx.MockTransport(handler))
        issuer = OpenRouterIssuer(provisioning_key="prov-key-123456789", client=client)

        result = run_monitoring_pass(
            self._aggregator(issuer), AnomalyDetector(make_thresholds()), self.publisher,
            db_path=self.db_path, now=NOW,
        )

        assert "Invalid credential" in result.source_error
        assert result.report_path.exists()
        assert result.exit_code == EXIT_CODE_FAIL

    def test_concurrent_pass_is_refused(self):
        issuer = FakeIssuer(credentials=[make_credential("key-1")])

        with RunLock(MONITORING_SCOPE, self.db_path, owner="someone-else"):
            with pytest.raises(RunLockedError):
                run_monitoring_pass(
                    self._aggregator(issuer), AnomalyDetector(make_thresholds()), self.publisher,
                    db_path=self.db_path, now=NOW,
                )

    def test_lock_is_released_after_pass(self):
        issuer = FakeIssuer(credentials=[make_credential("key-1")])
        detector = AnomalyDetector(make_thresholds())

        run_monitoring_pass(self._aggregator(issuer), detector, self.publisher, db_path=self.db_path, now=NOW)
        run_monitoring_pass(self._aggregator(issuer), detector, self.publisher, db_path=self.db_path, now=NOW)

        assert len(list(os.scandir(self.report_dir))) == 2


class TestBudgetPass(PipelineTestCase):
    """Test budget passes end to end."""

    def _monitor(self) -> BudgetMonitor:
        return BudgetMonitor(
            {
                BudgetScope.DAILY: Budget(BudgetScope.DAILY, 100.0),
                BudgetScope.MONTHLY: Budget(BudgetScope.MONTHLY, 1000.0),
            },
            WatermarkRepository(self.db_path),
        )

    def _issuer(self) -> FakeIssuer:
        return FakeIssuer(
            credentials=[make_credential("key-1")],
            usage={
                ("key-1", UsageWindow.DAILY): RawUsage(10, 100, 92.0),
                ("key-1", UsageWindow.MONTHLY): RawUsage(100, 1000, 400.0),
            },
        )

    def test_unchanged_spend_does_not_realert(self):
        """Second run with the same spend produces no new alerts."""
        first = run_budget_pass(
            self._aggregator(self._issuer()), self._monitor(), self.publisher, db_path=self.db_path, now=NOW
        )
        second = run_budget_pass(
            self._aggregator(self._issuer()), self._monitor(), self.publisher, db_path=self.db_path, now=NOW
        )

        assert [(a.scope, a.watermark) for a in first.alerts] == [(BudgetScope.DAILY, 90)]
        assert second.alerts == []
        assert len(self.channel.messages) == 1
        assert first.exit_code == EXIT_CODE_PASS
        assert second.report_path.exists()

    def test_exceeded_budget_fails(self):
        issuer = FakeIssuer(
            credentials=[make_credential("key-1")],
            usage={("key-1", UsageWindow.DAILY): RawUsage(10, 100, 150.0)},
        )

        result = run_budget_pass(
            self._aggregator(issuer), self._monitor(), self.publisher, db_path=self.db_path, now=NOW
        )

        assert [a.watermark for a in result.alerts] == [100]
        assert result.exit_code == EXIT_CODE_FAIL


class TestRotationRun(PipelineTestCase):
    """Test rotation runs with publishing."""

    def _orchestrator(self, issuer: FakeIssuer) -> RotationOrchestrator:
        return RotationOrchestrator(
            issuer,
            RotationJobRepository(self.db_path),
            RotationConfig(backoff_base_seconds=0.0),
            sleep=no_sleep,
        )

    def test_completed_rotation_exits_zero(self):
        issuer = FakeIssuer(credentials=[make_credential("old-1")])
        target = FakeTarget("t1")

        result = run_rotation(
            self._orchestrator(issuer), self.publisher, "old-1", [target], db_path=self.db_path, retire_old=True
        )

        assert result.job.state == RotationState.COMPLETED
        assert result.exit_code == EXIT_CODE_PASS
        assert target.value == issuer.values["new-1"]
        report = json.loads(result.report_path.read_text(encoding="utf-8"))
        assert report["rotation"]["old_retired"] is True

    def test_rolled_back_rotation_exits_non_zero(self):
        issuer = FakeIssuer(credentials=[make_credential("old-1")])
        targets = [FakeTarget("t1"), FakeTarget("t2", failing_sets=99)]

        result = run_rotation(self._orchestrator(issuer), self.publisher, "old-1", targets, db_path=self.db_path)

        assert result.job.state == RotationState.ROLLED_BACK
        assert result.exit_code == EXIT_CODE_FAIL
        assert all(t.value == OLD_VALUE for t in targets)
