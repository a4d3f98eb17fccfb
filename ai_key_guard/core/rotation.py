"""
Credential rotation.

Issues a new credential, propagates it to every deployment target,
verifies adoption and retires the old one. Any target that cannot be
brought over forces a rollback of all targets to their previous value.

States:
    CREATED -> PROPAGATING -> VERIFYING -> COMPLETED
    PROPAGATING | VERIFYING -> ROLLING_BACK -> ROLLED_BACK
    CREATED -> FAILED (setup error, cancellation)

Per-target work runs in a worker pool; every job-level write goes through
the job's lock and is persisted with an optimistic version check.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from .errors import (
    InvalidTransitionError,
    KeyGuardError,
    RotationTargetError,
    TransientIOError,
    mask_credential,
)
from .retry import retry_call
from ai_key_guard.clients.base import CredentialIssuer, DeploymentTarget
from ai_key_guard.config.loader import RotationConfig
from ai_key_guard.storage.models import (
    IssuedCredential,
    RotationJob,
    RotationState,
    TargetStatus,
)
from ai_key_guard.storage.repository import RotationJobRepository

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    RotationState.CREATED: {RotationState.PROPAGATING, RotationState.FAILED},
    RotationState.PROPAGATING: {RotationState.VERIFYING, RotationState.ROLLING_BACK},
    RotationState.VERIFYING: {RotationState.COMPLETED, RotationState.ROLLING_BACK},
    RotationState.ROLLING_BACK: {RotationState.ROLLED_BACK},
}

# Jobs abandoned by a dead process can only be closed out as FAILED
ABANDONED_TRANSITIONS = {
    RotationState.PROPAGATING: {RotationState.FAILED},
    RotationState.VERIFYING: {RotationState.FAILED},
    RotationState.ROLLING_BACK: {RotationState.FAILED},
}

TARGET_RETRYABLE_ERRORS = (TransientIOError, TimeoutError, RotationTargetError)


@dataclass
class _JobContext:
    """In-memory state of a running job. Secret values never leave it."""
    deadline: float
    new_value: Optional[str] = None
    previous_values: Dict[str, Optional[str]] = field(default_factory=dict)
    # Targets still holding the new value after rollback
    stranded: Set[str] = field(default_factory=set)


class RotationOrchestrator:
    """Drives rotation jobs through their state machine."""

    def __init__(
        self,
        issuer: CredentialIssuer,
        repository: RotationJobRepository,
        config: Optional[RotationConfig] = None,
        probe: Optional[Callable[[str], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the orchestrator.

        Args:
            issuer: Credential-issuing service
            repository: Rotation job store
            config: Retry budget, deadline and pool size
            probe: Optional smoke test run against a freshly issued credential
            sleep: Sleep function used between retries
            clock: Monotonic clock used for deadlines
        """
        self.issuer = issuer
        self.repository = repository
        self.config = config or RotationConfig()
        self.probe = probe
        self._sleep = sleep
        self._clock = clock
        self._contexts: Dict[str, _JobContext] = {}
        self._contexts_lock = threading.Lock()

    # =========================================================================
    # STATE
    # =========================================================================

    def _context(self, job: RotationJob) -> _JobContext:
        with self._contexts_lock:
            ctx = self._contexts.get(job.id)
            if ctx is None:
                raise InvalidTransitionError(f"Rotation job {job.id} is not owned by this orchestrator")
            return ctx

    def _transition(self, job: RotationJob, new_state: RotationState, error: Optional[str] = None,
                    allowed: Optional[Dict] = None) -> None:
        allowed = allowed or ALLOWED_TRANSITIONS
        with job.lock:
            if new_state not in allowed.get(job.state, set()):
                raise InvalidTransitionError(
                    f"Rotation job {job.id}: {job.state.value} -> {new_state.value} is not allowed"
                )
            previous = job.state
            job.state = new_state
            if error:
                job.error = error
            if new_state.is_terminal:
                job.completed_at = datetime.now(timezone.utc)
            self.repository.save(job)
        logger.info("Rotation job %s: %s -> %s", job.id, previous.value, new_state.value)

    def _set_target_status(self, job: RotationJob, target_id: str, status: TargetStatus,
                           error: Optional[str] = None) -> None:
        with job.lock:
            job.target_status[target_id] = status
            if error:
                job.target_errors[target_id] = error
            self.repository.save(job)
        if error:
            logger.warning("Rotation job %s: target %s -> %s (%s)", job.id, target_id, status.value, error)
        else:
            logger.info("Rotation job %s: target %s -> %s", job.id, target_id, status.value)

    def _require(self, job: RotationJob, state: RotationState) -> None:
        if job.state != state:
            raise InvalidTransitionError(
                f"Rotation job {job.id} is {job.state.value}, expected {state.value}"
            )

    def deadline_passed(self, job: RotationJob) -> bool:
        return self._clock() >= self._context(job).deadline

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def create_job(self, old_credential_id: str, targets: Sequence[DeploymentTarget]) -> RotationJob:
        """Record a new rotation job in CREATED state."""
        target_ids = [t.target_id for t in targets]
        if not target_ids:
            raise ValueError("at least one deployment target is required")
        if len(set(target_ids)) != len(target_ids):
            raise ValueError("deployment target ids must be unique")

        job = RotationJob(
            id=uuid.uuid4().hex,
            state=RotationState.CREATED,
            old_credential_id=old_credential_id,
            started_at=datetime.now(timezone.utc),
            target_status={tid: TargetStatus.PENDING for tid in target_ids},
        )
        self.repository.create(job)
        with self._contexts_lock:
            self._contexts[job.id] = _JobContext(deadline=self._clock() + self.config.deadline_seconds)
        logger.info(
            "Rotation job %s created for credential %s across %d target(s)",
            job.id, old_credential_id, len(target_ids),
        )
        return job

    def issue(self, job: RotationJob, name: Optional[str] = None,
              cancel_event: Optional[threading.Event] = None) -> Optional[IssuedCredential]:
        """Mint the replacement credential and move to PROPAGATING.

        Any failure here is a setup error: the job ends FAILED and a
        credential minted along the way is revoked again.
        """
        self._require(job, RotationState.CREATED)
        ctx = self._context(job)

        if cancel_event is not None and cancel_event.is_set():
            self._transition(job, RotationState.FAILED, error="cancelled before issue")
            return None

        name = name or f"{self.config.name_prefix}-{datetime.now(timezone.utc):%Y-%m-%d}-{job.id[:6]}"
        try:
            issued = retry_call(
                lambda: self.issuer.create_credential(name, self.config.credential_limit),
                attempts=self.config.max_attempts,
                base_delay=self.config.backoff_base_seconds,
                max_delay=self.config.backoff_max_seconds,
                sleep=self._sleep,
                description=f"create credential {name}",
            )
        except KeyGuardError as e:
            self._transition(job, RotationState.FAILED, error=f"issue failed: {e}")
            return None

        with job.lock:
            job.new_credential_id = issued.credential.id
            self.repository.save(job)
        ctx.new_value = issued.value
        logger.info(
            "Rotation job %s issued credential %s (%s)",
            job.id, issued.credential.id, mask_credential(issued.value),
        )

        if self.probe is not None and not self.probe(issued.value):
            self._revoke_new(job)
            self._transition(job, RotationState.FAILED, error="new credential failed smoke test")
            return None

        if cancel_event is not None and cancel_event.is_set():
            self._revoke_new(job)
            self._transition(job, RotationState.FAILED, error="cancelled before propagation")
            return None

        self._transition(job, RotationState.PROPAGATING)
        return issued

    def propagate(self, job: RotationJob, targets: Sequence[DeploymentTarget]) -> RotationJob:
        """Push the new credential to every target in parallel.

        Each target gets ``max_attempts`` tries with exponential backoff. A
        target that exhausts them is marked failed and the job rolls back.
        """
        self._require(job, RotationState.PROPAGATING)
        ctx = self._context(job)

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            list(executor.map(lambda t: self._propagate_one(job, ctx, t), targets))

        failed = job.targets_in(TargetStatus.FAILED)
        if failed:
            return self.rollback(job, targets, f"propagation failed for: {', '.join(failed)}")
        if self.deadline_passed(job):
            return self.rollback(job, targets, "deadline exceeded during propagation")
        self._transition(job, RotationState.VERIFYING)
        return job

    def _propagate_one(self, job: RotationJob, ctx: _JobContext, target: DeploymentTarget) -> None:
        tid = target.target_id
        if self.deadline_passed(job):
            self._set_target_status(job, tid, TargetStatus.FAILED, "deadline exceeded before update")
            return
        try:
            ctx.previous_values[tid] = self._with_retry(
                target.get_active_credential, job, f"read current credential of {tid}"
            )
            self._with_retry(
                lambda: target.set_credential(ctx.new_value), job, f"update {tid}"
            )
        except Exception as e:
            self._set_target_status(job, tid, TargetStatus.FAILED, f"update failed: {e}")
            return
        self._set_target_status(job, tid, TargetStatus.UPDATED)

    def verify(self, job: RotationJob, targets: Sequence[DeploymentTarget]) -> RotationJob:
        """Confirm every target reads back the new credential.

        COMPLETED only when every target is verified; otherwise roll back.
        """
        self._require(job, RotationState.VERIFYING)
        ctx = self._context(job)

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            list(executor.map(lambda t: self._verify_one(job, ctx, t), targets))

        unverified = [tid for tid, s in sorted(job.target_status.items()) if s != TargetStatus.VERIFIED]
        if unverified:
            return self.rollback(job, targets, f"verification failed for: {', '.join(unverified)}")
        if self.deadline_passed(job):
            return self.rollback(job, targets, "deadline exceeded during verification")
        self._transition(job, RotationState.COMPLETED)
        return job

    def _verify_one(self, job: RotationJob, ctx: _JobContext, target: DeploymentTarget) -> None:
        tid = target.target_id

        def read_back() -> None:
            if target.get_active_credential() != ctx.new_value:
                raise RotationTargetError("target is not using the new credential", tid)

        try:
            self._with_retry(read_back, job, f"verify {tid}")
        except Exception as e:
            self._set_target_status(job, tid, TargetStatus.FAILED, f"verification failed: {e}")
            return
        self._set_target_status(job, tid, TargetStatus.VERIFIED)

    def rollback(self, job: RotationJob, targets: Sequence[DeploymentTarget], reason: str) -> RotationJob:
        """Restore every touched target to its previous credential.

        Best effort: each revert is retried, read back and logged, and the
        job always ends ROLLED_BACK. The unused new credential is revoked,
        unless a target could not be reverted and still depends on it.
        """
        self._transition(job, RotationState.ROLLING_BACK, error=reason)
        ctx = self._context(job)

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            list(executor.map(lambda t: self._revert_one(job, ctx, t), targets))

        error = None
        if ctx.stranded:
            stranded = ", ".join(sorted(ctx.stranded))
            logger.error(
                "Rotation job %s: keeping credential %s, still active on: %s",
                job.id, job.new_credential_id, stranded,
            )
            error = (
                f"{reason}; new credential {job.new_credential_id} kept, "
                f"still active on: {stranded} (manual review required)"
            )
        else:
            self._revoke_new(job)
        self._transition(job, RotationState.ROLLED_BACK, error=error)
        return job

    def _revert_one(self, job: RotationJob, ctx: _JobContext, target: DeploymentTarget) -> None:
        tid = target.target_id
        status = job.target_status.get(tid)
        if tid not in ctx.previous_values:
            return
        previous = ctx.previous_values[tid]

        if status == TargetStatus.FAILED:
            # The write may have landed even though it was reported as failed
            try:
                if target.get_active_credential() != ctx.new_value:
                    return
            except Exception as e:
                logger.warning("Rotation job %s: cannot read back failed target %s: %s", job.id, tid, e)
                return
        elif status not in (TargetStatus.UPDATED, TargetStatus.VERIFIED):
            return

        if previous is None:
            ctx.stranded.add(tid)
            self._set_target_status(job, tid, TargetStatus.FAILED, "rollback impossible: no previous credential")
            return

        def restore() -> None:
            target.set_credential(previous)
            if target.get_active_credential() != previous:
                raise RotationTargetError("previous credential not active after revert", tid)

        try:
            retry_call(
                restore,
                attempts=self.config.max_attempts,
                base_delay=self.config.backoff_base_seconds,
                max_delay=self.config.backoff_max_seconds,
                retry_on=TARGET_RETRYABLE_ERRORS,
                sleep=self._sleep,
                description=f"revert {tid}",
            )
        except Exception as e:
            logger.error("Rotation job %s: revert of %s failed: %s", job.id, tid, e)
            ctx.stranded.add(tid)
            self._set_target_status(job, tid, TargetStatus.FAILED, f"rollback failed: {e}")
            return
        self._set_target_status(job, tid, TargetStatus.REVERTED)

    def retire(self, credential_id: str) -> bool:
        """Revoke a credential at the issuer. Safe to call repeatedly.

        Returns:
            True once the credential no longer exists

        Raises:
            KeyGuardError: If the issuer keeps failing
        """
        deleted = retry_call(
            lambda: self.issuer.delete_credential(credential_id),
            attempts=self.config.max_attempts,
            base_delay=self.config.backoff_base_seconds,
            max_delay=self.config.backoff_max_seconds,
            sleep=self._sleep,
            description=f"retire credential {credential_id}",
        )
        if deleted:
            logger.info("Retired credential %s", credential_id)
        else:
            logger.info("Credential %s was already retired", credential_id)
        return True

    def _revoke_new(self, job: RotationJob) -> None:
        if not job.new_credential_id:
            return
        try:
            self.retire(job.new_credential_id)
        except KeyGuardError as e:
            logger.error(
                "Rotation job %s: could not revoke unused credential %s: %s",
                job.id, job.new_credential_id, e,
            )

    def _with_retry(self, func, job: RotationJob, description: str):
        return retry_call(
            func,
            attempts=self.config.max_attempts,
            base_delay=self.config.backoff_base_seconds,
            max_delay=self.config.backoff_max_seconds,
            retry_on=TARGET_RETRYABLE_ERRORS,
            sleep=self._sleep,
            description=f"job {job.id}: {description}",
            should_continue=lambda: not self.deadline_passed(job),
        )

    # =========================================================================
    # DRIVER
    # =========================================================================

    def run(
        self,
        old_credential_id: str,
        targets: Sequence[DeploymentTarget],
        name: Optional[str] = None,
        retire_old: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> RotationJob:
        """Run a full rotation and return the job in a terminal state.

        Cancellation is honored until propagation starts; after that the
        job always runs to COMPLETED or ROLLED_BACK.
        """
        job = self.create_job(old_credential_id, targets)
        try:
            self.issue(job, name=name, cancel_event=cancel_event)
            if job.state == RotationState.PROPAGATING:
                self.propagate(job, targets)
            if job.state == RotationState.VERIFYING:
                self.verify(job, targets)
        except Exception as e:
            logger.exception("Rotation job %s hit an unexpected error in %s", job.id, job.state.value)
            self._close_out(job, targets, f"unexpected error: {e}")

        if job.state == RotationState.COMPLETED and retire_old:
            try:
                self.retire(old_credential_id)
                with job.lock:
                    job.old_retired = True
                    self.repository.save(job)
            except KeyGuardError as e:
                logger.error("Rotation job %s: old credential not retired: %s", job.id, e)
                with job.lock:
                    job.error = f"retire failed: {e}"
                    self.repository.save(job)

        with self._contexts_lock:
            self._contexts.pop(job.id, None)
        logger.info("Rotation job %s finished %s", job.id, job.state.value)
        return job

    def _close_out(self, job: RotationJob, targets: Sequence[DeploymentTarget], reason: str) -> None:
        if job.state == RotationState.CREATED:
            self._revoke_new(job)
            self._transition(job, RotationState.FAILED, error=reason)
        elif job.state in (RotationState.PROPAGATING, RotationState.VERIFYING):
            self.rollback(job, targets, reason)
        elif job.state == RotationState.ROLLING_BACK:
            with job.lock:
                job.error = f"{job.error}; {reason}" if job.error else reason
            self._transition(job, RotationState.ROLLED_BACK)

    def reap_abandoned(self, now: Optional[datetime] = None) -> List[RotationJob]:
        """Close out non-terminal jobs left behind by a process that died.

        Their in-memory values are gone, so they cannot be rolled back
        automatically; they are marked FAILED for manual review.
        """
        now = now or datetime.now(timezone.utc)
        horizon = timedelta(seconds=self.config.deadline_seconds)
        reaped = []
        for job in self.repository.list_jobs(active_only=True):
            with self._contexts_lock:
                owned = job.id in self._contexts
            if owned or job.started_at + horizon > now:
                continue
            if job.state == RotationState.CREATED:
                self._transition(job, RotationState.FAILED, error="abandoned before propagation")
            else:
                self._transition(
                    job, RotationState.FAILED,
                    error=f"abandoned in {job.state.value}; targets need manual review",
                    allowed=ABANDONED_TRANSITIONS,
                )
            reaped.append(job)
        if reaped:
            logger.warning("Reaped %d abandoned rotation job(s)", len(reaped))
        return reaped
