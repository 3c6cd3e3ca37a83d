# -*- coding: utf-8 -*-
# potkeeper/app/services/monitoring_service.py
# =============================================================================
# Назначение кода:
#   Операционные задачи вокруг оркестратора:
#   • BalanceMonitor - баланс кошелька оператора (газ на lock/finish/cancel);
#   • Reporter       - периодические health- и stats-отчёты админам;
#   • ProofAuditor   - повторная проверка сида сохранённого раунда по маяку.
#
# Канон/инварианты:
#   • Только чтение: ни одна задача здесь не меняет состояние леджера.
#   • Аудит сида не участвует в горячем пути раунда.
#
# Запреты:
#   • Никаких float для балансов - только Decimal.
# =============================================================================

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from potkeeper.app.core.errors_core import NotFoundError
from potkeeper.app.core.logging_core import get_logger
from potkeeper.app.integrations.beacon_api import BeaconClient
from potkeeper.app.integrations.ledger_api import LedgerGateway
from potkeeper.app.services import notifications_service as events
from potkeeper.app.services.notifications_service import NotificationService
from potkeeper.app.services.round_orchestrator import OrchestratorStats
from potkeeper.app.services.rounds_store_service import RoundStore

logger = get_logger(__name__)

# Изменения баланса меньше этого значения не логируются
_BALANCE_CHANGE_LOG_STEP = Decimal("0.001")


class BalanceMonitor:
    """
    Проверка баланса оператора.

    ниже warn_threshold → low_balance (с кулдауном);
    ниже critical_floor → critical_error (всегда).
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        notifier: NotificationService,
        *,
        warn_threshold: Decimal,
        critical_floor: Decimal,
    ) -> None:
        self.ledger = ledger
        self.notifier = notifier
        self.warn_threshold = Decimal(warn_threshold)
        self.critical_floor = Decimal(critical_floor)
        self.last_balance: Optional[Decimal] = None

    async def run_once(self) -> Decimal:
        balance = await self.ledger.operator_balance()

        if self.last_balance is not None:
            diff = balance - self.last_balance
            if abs(diff) > _BALANCE_CHANGE_LOG_STEP:
                logger.info(
                    "Operator balance changed",
                    extra={"from": str(self.last_balance), "to": str(balance), "diff": str(diff)},
                )
        self.last_balance = balance

        if balance < self.warn_threshold:
            logger.warning(
                "Operator balance is low",
                extra={"balance": str(balance), "threshold": str(self.warn_threshold)},
            )
            self.notifier.dispatch(
                events.LOW_BALANCE,
                {"balance": str(balance), "threshold": str(self.warn_threshold)},
            )
        if balance < self.critical_floor:
            logger.error("Operator balance critically low", extra={"balance": str(balance)})
            self.notifier.dispatch(
                events.CRITICAL_ERROR,
                {"type": "critical_balance", "message": f"Operator balance critically low: {balance}"},
            )
        return balance


class Reporter:
    """Health/stats-отчёты из OrchestratorStats (+ баланс, если доступен)."""

    def __init__(
        self,
        stats: OrchestratorStats,
        notifier: NotificationService,
        balance_monitor: Optional[BalanceMonitor] = None,
    ) -> None:
        self.stats = stats
        self.notifier = notifier
        self.balance_monitor = balance_monitor

    def _balance(self) -> Optional[str]:
        if self.balance_monitor is None or self.balance_monitor.last_balance is None:
            return None
        return str(self.balance_monitor.last_balance)

    async def health_report(self) -> Dict[str, Any]:
        status = "degraded" if self.stats.consecutive_errors else "healthy"
        data = {
            "status": status,
            "uptimeSec": self.stats.uptime_seconds(),
            "balance": self._balance(),
            "roundsFinished": self.stats.rounds_finished,
            "errors": self.stats.errors,
        }
        await self.notifier.notify(events.HEALTH_CHECK, data)
        return data

    async def stats_report(self) -> Dict[str, Any]:
        data = dict(self.stats.as_dict())
        data["balance"] = self._balance()
        await self.notifier.notify(events.STATS_REPORT, data)
        return data


class ProofAuditor:
    """Повторная проверка сохранённого сида по маяку (аудит)."""

    def __init__(self, store: RoundStore, beacon: BeaconClient) -> None:
        self.store = store
        self.beacon = beacon

    async def verify_round(self, round_id: str) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: для раунда нет доказательства.
            BlockNotFoundError / BeaconUnavailableError: маяк не отдал блок.
        """
        proof = await self.store.get_proof(round_id)
        if proof is None:
            raise NotFoundError(
                f"No beacon proof stored for round {round_id}",
                details={"roundId": round_id},
            )
        matches = await self.beacon.verify(proof["blockNumber"], proof["blockHash"])
        if not matches:
            logger.error(
                "Stored seed does not match beacon block",
                extra={"round_id": round_id, "block": proof["blockNumber"]},
            )
        return {
            "roundId": round_id,
            "blockNumber": proof["blockNumber"],
            "seed": proof["blockHash"],
            "matches": matches,
        }


__all__ = ["BalanceMonitor", "Reporter", "ProofAuditor"]
