"""
Usage aggregation.

Pulls per-credential usage from the issuing service and normalizes it into
UsageSnapshots. Knows nothing about thresholds or alerting.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, Generic, List, Optional, Protocol, Sequence, TypeVar

from .errors import AuthError, KeyGuardError
from .retry import retry_call
from ai_key_guard.clients.base import CredentialIssuer
from ai_key_guard.storage.models import Availability, Credential, UsageSnapshot, UsageWindow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UsageSource(Protocol):
    """Anything that can produce the usage snapshots of one pass."""

    def fetch(
        self,
        credential_ids: Optional[Sequence[str]] = None,
        windows: Sequence[UsageWindow] = (UsageWindow.DAILY,),
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[UsageSnapshot]:
        ...


class CachedValue(Generic[T]):
    """A value with an explicit last-refreshed timestamp.

    Refreshed lazily on access once older than ``ttl_seconds``. Concurrent
    callers share one refresh.
    """

    def __init__(
        self,
        loader: Callable[[], T],
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._loaded_at: Optional[float] = None
        self.refreshed_at: Optional[datetime] = None

    @property
    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return self._clock() - self._loaded_at >= self.ttl_seconds

    def get(self) -> T:
        with self._lock:
            if self.is_stale:
                self._refresh_locked()
            return self._value

    def refresh(self) -> T:
        with self._lock:
            self._refresh_locked()
            return self._value

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None

    def _refresh_locked(self) -> None:
        self._value = self._loader()
        self._loaded_at = self._clock()
        self.refreshed_at = datetime.now(timezone.utc)


class UsageAggregator:
    """Collects usage snapshots for the fleet with bounded concurrency.

    A failure for one credential produces an ``unavailable`` snapshot for
    it; the rest of the batch is unaffected.
    """

    def __init__(
        self,
        issuer: CredentialIssuer,
        max_concurrency: int = 5,
        cache_ttl_seconds: float = 300.0,
        retry_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.issuer = issuer
        self.max_concurrency = max_concurrency
        self.retry_attempts = retry_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self._sleep = sleep
        self.credentials: CachedValue[List[Credential]] = CachedValue(
            self._list_credentials, cache_ttl_seconds, clock
        )

    def _list_credentials(self) -> List[Credential]:
        return retry_call(
            self.issuer.list_credentials,
            attempts=self.retry_attempts,
            base_delay=self.backoff_base_seconds,
            sleep=self._sleep,
            description="list credentials",
        )

    def fetch(
        self,
        credential_ids: Optional[Sequence[str]] = None,
        windows: Sequence[UsageWindow] = (UsageWindow.DAILY,),
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[UsageSnapshot]:
        """Fetch one snapshot per (credential, window).

        Args:
            credential_ids: Optional subset of credentials; all when None
            windows: Usage windows to fetch for each credential
            now: Capture time; defaults to the current UTC time
            cancel_event: When set, fetches not yet started are skipped

        Returns:
            Snapshots ordered by credential, then window
        """
        now = now or datetime.now(timezone.utc)
        known: Dict[str, Credential] = {c.id: c for c in self.credentials.get()}

        if credential_ids is None:
            selected: List[Optional[Credential]] = list(known.values())
            ids = list(known.keys())
        else:
            ids = list(credential_ids)
            selected = [known.get(cid) for cid in ids]

        work = [(cid, credential, window) for cid, credential in zip(ids, selected) for window in windows]
        logger.info(
            "Fetching usage for %d credential(s) x %d window(s)", len(ids), len(windows)
        )

        with ThreadPoolExecutor(max_workers=self.max_concurrency) as executor:
            futures = [
                executor.submit(self._fetch_one, cid, credential, window, now, cancel_event)
                for cid, credential, window in work
            ]
            snapshots = [future.result() for future in futures]

        unavailable = sum(1 for s in snapshots if not s.is_available)
        if unavailable:
            logger.warning("%d of %d snapshot(s) unavailable", unavailable, len(snapshots))
        return snapshots

    def _fetch_one(
        self,
        credential_id: str,
        credential: Optional[Credential],
        window: UsageWindow,
        now: datetime,
        cancel_event: Optional[threading.Event],
    ) -> UsageSnapshot:
        if credential is None:
            return UsageSnapshot.unavailable(credential_id, window, now, "credential not found")

        def unavailable(error: str) -> UsageSnapshot:
            return UsageSnapshot.unavailable(
                credential.id, window, now, error,
                credential_name=credential.name,
                limit=credential.limit,
                disabled=credential.disabled,
            )

        if cancel_event is not None and cancel_event.is_set():
            return unavailable("cancelled")

        try:
            raw = retry_call(
                lambda: self.issuer.fetch_usage(credential.id, window, now),
                attempts=self.retry_attempts,
                base_delay=self.backoff_base_seconds,
                sleep=self._sleep,
                description=f"fetch usage for {credential.id}",
                should_continue=lambda: cancel_event is None or not cancel_event.is_set(),
            )
        except AuthError as e:
            logger.error("Issuer rejected usage request for %s: %s", credential.id, e)
            return unavailable(f"auth error: {e}")
        except KeyGuardError as e:
            logger.warning("Usage unavailable for %s: %s", credential.id, e)
            return unavailable(str(e))
        except Exception as e:
            logger.exception("Unexpected error fetching usage for %s", credential.id)
            return unavailable(f"unexpected error: {e}")

        return UsageSnapshot(
            credential_id=credential.id,
            window=window,
            request_count=raw.request_count,
            token_count=raw.token_count,
            cost=raw.cost,
            origins=frozenset(raw.origins),
            model_requests=dict(raw.model_requests),
            client_id=raw.client_id,
            captured_at=now,
            availability=Availability.ESTIMATED if raw.estimated else Availability.FULL,
            credential_name=credential.name,
            limit=credential.limit,
            disabled=credential.disabled,
        )
