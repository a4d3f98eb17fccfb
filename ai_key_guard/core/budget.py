"""
Budget monitoring.

Compares spend per (credential, period) against the configured budgets
and raises at most one alert per watermark per period.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ai_key_guard.storage.models import (
    Budget,
    BudgetAlert,
    BudgetAlertKind,
    BudgetScope,
    UsageSnapshot,
    UsageWindow,
)
from ai_key_guard.storage.repository import WatermarkRepository

logger = logging.getLogger(__name__)

WATERMARKS: Tuple[int, ...] = (75, 90, 100)

# Pseudo credential id for spend summed across the whole fleet
FLEET_SCOPE = "*"

SCOPE_WINDOWS = {
    BudgetScope.DAILY: UsageWindow.DAILY,
    BudgetScope.MONTHLY: UsageWindow.MONTHLY,
}


def period_key(scope: BudgetScope, now: datetime) -> str:
    """Identifier of the budget period containing ``now``."""
    if scope == BudgetScope.DAILY:
        return now.date().isoformat()
    return now.strftime("%Y-%m")


def crossed_watermarks(spend: float, limit: float) -> List[int]:
    percent = spend / limit * 100
    return [w for w in WATERMARKS if percent >= w]


class BudgetMonitor:
    """Watermark-deduplicated budget checks.

    Re-running with unchanged spend never re-alerts: a watermark flag is
    recorded atomically the first time it is crossed in a period, and the
    flags of earlier periods are purged on every check.
    """

    def __init__(
        self,
        budgets: Dict[BudgetScope, Budget],
        repository: WatermarkRepository,
        include_fleet_total: bool = True,
    ):
        self.budgets = budgets
        self.repository = repository
        self.include_fleet_total = include_fleet_total

    def check(self, snapshots: Sequence[UsageSnapshot], now: datetime) -> List[BudgetAlert]:
        """Return the alerts newly due for the given spend.

        Args:
            snapshots: Usage snapshots; the window matching each budget scope is used
            now: Evaluation time, which selects the current period

        Returns:
            New alerts, at most one per (credential, scope) per call
        """
        alerts = []
        for scope, budget in self.budgets.items():
            key = period_key(scope, now)
            self.repository.purge_before(scope.value, key)

            window = SCOPE_WINDOWS[scope]
            relevant = [s for s in snapshots if s.window == window and s.is_available]
            spends = [(s.credential_id, s.cost) for s in relevant]
            if self.include_fleet_total and len(relevant) > 1:
                spends.append((FLEET_SCOPE, sum(s.cost for s in relevant)))

            for credential_id, spend in spends:
                alert = self._check_one(credential_id, spend, budget, key, now)
                if alert is not None:
                    alerts.append(alert)

        if alerts:
            logger.warning("%d new budget alert(s)", len(alerts))
        return alerts

    def _check_one(
        self,
        credential_id: str,
        spend: float,
        budget: Budget,
        key: str,
        now: datetime,
    ) -> Optional[BudgetAlert]:
        newly_crossed = [
            watermark
            for watermark in crossed_watermarks(spend, budget.limit)
            if self.repository.mark_alerted(credential_id, budget.scope.value, key, watermark, now)
        ]
        if not newly_crossed:
            return None

        # Several watermarks crossed at once collapse into one alert naming all of them
        watermark = max(newly_crossed)
        kind = BudgetAlertKind.EXCEEDED if watermark >= 100 else BudgetAlertKind.APPROACHING
        subject = "Fleet" if credential_id == FLEET_SCOPE else f"Credential {credential_id}"
        percent = spend / budget.limit * 100
        if kind == BudgetAlertKind.EXCEEDED:
            message = (
                f"{subject} {budget.scope.value} spend {spend:,.2f} {budget.currency} "
                f"exceeds budget {budget.limit:,.2f} {budget.currency}"
            )
        else:
            message = (
                f"{subject} {budget.scope.value} spend {spend:,.2f} {budget.currency} "
                f"is at {percent:.1f}% of budget {budget.limit:,.2f} {budget.currency}"
            )
        if len(newly_crossed) > 1:
            message += f" (crossed {', '.join(f'{w}%' for w in newly_crossed)})"
        return BudgetAlert(
            credential_id=credential_id,
            scope=budget.scope,
            period_key=key,
            watermark=watermark,
            kind=kind,
            spend=spend,
            limit=budget.limit,
            currency=budget.currency,
            message=message,
            watermarks=tuple(newly_crossed),
        )
