"""
Data models for storage layer.

Defines the credential, usage, finding and rotation records shared by
every component.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple


class UsageWindow(str, Enum):
    """Aggregation window of a usage snapshot."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Availability(str, Enum):
    """How complete the usage data behind a snapshot is."""
    FULL = "full"
    ESTIMATED = "estimated"
    UNAVAILABLE = "unavailable"


class FindingType(str, Enum):
    """Anomaly rules that can produce a finding."""
    RAPID_VOLUME = "rapid-volume"
    BURST_TOKENS = "burst-tokens"
    OFF_HOURS = "off-hours"
    EXPENSIVE_MODEL_CONCENTRATION = "expensive-model-concentration"
    MULTI_ORIGIN = "multi-origin"
    SUSPICIOUS_CLIENT = "suspicious-client"
    APPROACHING_LIMIT = "approaching-limit"


class Severity(str, Enum):
    """Severity of a single finding."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RiskLevel(str, Enum):
    """Overall risk level of a monitoring pass."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class BudgetScope(str, Enum):
    """Budget period."""
    DAILY = "daily"
    MONTHLY = "monthly"


class BudgetAlertKind(str, Enum):
    APPROACHING = "approaching"
    EXCEEDED = "exceeded"


class RotationState(str, Enum):
    """States of the rotation job state machine."""
    CREATED = "CREATED"
    PROPAGATING = "PROPAGATING"
    VERIFYING = "VERIFYING"
    COMPLETED = "COMPLETED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RotationState.COMPLETED, RotationState.ROLLED_BACK, RotationState.FAILED)


class TargetStatus(str, Enum):
    """Per-target progress inside a rotation job."""
    PENDING = "pending"
    UPDATED = "updated"
    VERIFIED = "verified"
    FAILED = "failed"
    REVERTED = "reverted"


@dataclass(frozen=True)
class Credential:
    """Metadata of an issued credential. Never carries the secret value."""
    id: str
    name: str
    label: str
    created_at: datetime
    limit: Optional[float] = None
    disabled: bool = False

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "label": self.label,
            "created_at": self.created_at.isoformat(),
            "limit": self.limit,
            "disabled": self.disabled,
        }


@dataclass(frozen=True)
class IssuedCredential:
    """A freshly minted credential together with its secret value.

    Only lives in memory for the duration of a rotation job.
    """
    credential: Credential
    value: str

    def __repr__(self) -> str:
        return f"IssuedCredential(credential={self.credential!r}, value='...{self.value[-4:]}')"


@dataclass(frozen=True)
class UsageSnapshot:
    """Immutable, normalized usage of one credential over one window.

    Created fresh on every aggregation pass and never modified afterwards.
    """
    credential_id: str
    window: UsageWindow
    request_count: int
    token_count: int
    cost: float
    origins: FrozenSet[str]
    model_requests: Dict[str, int]
    client_id: str
    captured_at: datetime
    availability: Availability
    credential_name: str = ""
    limit: Optional[float] = None
    disabled: bool = False
    error: Optional[str] = None

    @property
    def models(self) -> FrozenSet[str]:
        return frozenset(self.model_requests)

    @property
    def is_available(self) -> bool:
        return self.availability != Availability.UNAVAILABLE

    @classmethod
    def unavailable(
        cls,
        credential_id: str,
        window: UsageWindow,
        captured_at: datetime,
        error: str,
        credential_name: str = "",
        limit: Optional[float] = None,
        disabled: bool = False,
    ) -> "UsageSnapshot":
        """Placeholder snapshot for a credential whose usage could not be fetched."""
        return cls(
            credential_id=credential_id,
            window=window,
            request_count=0,
            token_count=0,
            cost=0.0,
            origins=frozenset(),
            model_requests={},
            client_id="",
            captured_at=captured_at,
            availability=Availability.UNAVAILABLE,
            credential_name=credential_name,
            limit=limit,
            disabled=disabled,
            error=error,
        )

    def to_dict(self) -> Dict:
        return {
            "credential_id": self.credential_id,
            "credential_name": self.credential_name,
            "window": self.window.value,
            "request_count": self.request_count,
            "token_count": self.token_count,
            "cost": self.cost,
            "origins": sorted(self.origins),
            "model_requests": dict(sorted(self.model_requests.items())),
            "client_id": self.client_id,
            "captured_at": self.captured_at.isoformat(),
            "availability": self.availability.value,
            "data_unavailable": not self.is_available,
            "limit": self.limit,
            "disabled": self.disabled,
            "error": self.error,
        }


@dataclass(frozen=True)
class Finding:
    """Output of one anomaly rule for one credential in one run."""
    type: FindingType
    severity: Severity
    credential_id: str
    description: str
    recommendation: str

    def to_dict(self) -> Dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "credential_id": self.credential_id,
            "description": self.description,
            "recommendation": self.recommendation,
        }


@dataclass(frozen=True)
class CredentialRisk:
    """Score contribution and findings of a single credential."""
    credential_id: str
    score: int
    findings: Tuple[Finding, ...]


@dataclass(frozen=True)
class RiskAssessment:
    """Aggregated risk of one monitoring pass. Immutable once published."""
    run_id: str
    score: int
    level: RiskLevel
    findings: Tuple[Finding, ...]
    timestamp: datetime
    per_credential: Dict[str, CredentialRisk] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "run_id": self.run_id,
            "score": self.score,
            "level": self.level.value,
            "timestamp": self.timestamp.isoformat(),
            "findings": [f.to_dict() for f in self.findings],
            "per_credential": {
                cid: {"score": risk.score, "findings": [f.type.value for f in risk.findings]}
                for cid, risk in sorted(self.per_credential.items())
            },
        }


@dataclass(frozen=True)
class Budget:
    """Spend limit for one period. Configuration, not derived data."""
    scope: BudgetScope
    limit: float
    currency: str = "USD"

    def __post_init__(self):
        if self.limit <= 0:
            raise ValueError(f"{self.scope.value} budget must be > 0")


@dataclass(frozen=True)
class BudgetAlert:
    """A watermark crossing that has not been alerted before in its period."""
    credential_id: str
    scope: BudgetScope
    period_key: str
    watermark: int
    kind: BudgetAlertKind
    spend: float
    limit: float
    currency: str
    message: str
    # Every watermark this alert covers, ascending; ``watermark`` is the highest
    watermarks: Tuple[int, ...] = ()

    @property
    def is_critical(self) -> bool:
        return self.kind == BudgetAlertKind.EXCEEDED

    def to_dict(self) -> Dict:
        return {
            "credential_id": self.credential_id,
            "scope": self.scope.value,
            "period": self.period_key,
            "watermark": self.watermark,
            "watermarks": list(self.watermarks or (self.watermark,)),
            "kind": self.kind.value,
            "spend": self.spend,
            "limit": self.limit,
            "currency": self.currency,
            "message": self.message,
        }


@dataclass
class RotationJob:
    """Stateful record of one credential rotation.

    Mutated only through RotationOrchestrator transitions, which hold
    ``lock`` for every change.
    """
    id: str
    state: RotationState
    old_credential_id: str
    started_at: datetime
    new_credential_id: Optional[str] = None
    target_status: Dict[str, TargetStatus] = field(default_factory=dict)
    target_errors: Dict[str, str] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    old_retired: bool = False
    version: int = 0
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def targets_in(self, *statuses: TargetStatus) -> List[str]:
        return sorted(tid for tid, status in self.target_status.items() if status in statuses)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "old_credential_id": self.old_credential_id,
            "new_credential_id": self.new_credential_id,
            "target_status": {tid: s.value for tid, s in sorted(self.target_status.items())},
            "target_errors": dict(sorted(self.target_errors.items())),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "old_retired": self.old_retired,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RotationJob":
        return cls(
            id=data["id"],
            state=RotationState(data["state"]),
            old_credential_id=data["old_credential_id"],
            new_credential_id=data.get("new_credential_id"),
            target_status={tid: TargetStatus(s) for tid, s in data.get("target_status", {}).items()},
            target_errors=dict(data.get("target_errors", {})),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=(
                datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None
            ),
            error=data.get("error"),
            old_retired=data.get("old_retired", False),
            version=data.get("version", 0),
        )
