# -*- coding: utf-8 -*-
# potkeeper/app/services/round_orchestrator.py
# =============================================================================
# PotKeeper - оркестратор жизненного цикла раунда
# -----------------------------------------------------------------------------
# Назначение:
#   • Раз в интервал (≈1 с) читает состояние раунда у леджера и выполняет
#     действие, положенное текущей фазе:
#       Idle     → start() и запись нового раунда;
#       Betting  → по истечении таймера lock();
#       Locked   → без билетов cancel(), иначе сид из маяка и finish(seed);
#       Complete → однократная запись итога в историю.
#   • Сохраняет историю раундов и доказательство сида через RoundStore.
#
# Канон/инварианты:
#   • Леджер - источник истины о фазе; оркестратор только следует за ним.
#   • Одновременно выполняется не более одного тика: перекрывающиеся тики
#     отбрасываются (SingleFlight), а не ставятся в очередь.
#   • Ни одно исключение не выходит из tick(): всё ловится на границе тика,
#     фаза леджера не сдвинулась - следующий тик повторит действие.
#   • Раунд без билетов отменяется, маяк для него не вызывается.
#   • Итог раунда записывается ровно один раз, вместе с победителем и сидом.
#   • Результат finish() держится в памяти, пока победитель и доказательство
#     сида не сохранены: запись повторяется на следующих тиках.
#   • Сбой записи в БД не блокирует движение раунда на леджере.
#
# Запреты:
#   • Никакой собственной «фазы» раунда: только то, что вернул леджер.
#   • Никаких повторов внутри тика - повтор делает следующий тик.
# =============================================================================

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Set, Tuple

from potkeeper.app.core.errors_core import LedgerRejectedError, PotError, UnknownPhaseError
from potkeeper.app.core.logging_core import get_logger, reset_round_context, set_round_context
from potkeeper.app.core.system_locks import SingleFlight
from potkeeper.app.core.utils_core import from_unix, iso, utc_now
from potkeeper.app.integrations.beacon_api import BeaconClient, BeaconProofData
from potkeeper.app.integrations.ledger_api import FinishResult, LedgerGateway, LedgerState
from potkeeper.app.services import notifications_service as events
from potkeeper.app.services.notifications_service import NotificationService
from potkeeper.app.services.rounds_store_service import RoundStore

logger = get_logger(__name__)


class GamePhase(IntEnum):
    """Фазы раунда леджера (значения совпадают с контрактом)."""

    IDLE = 0
    BETTING = 1
    LOCKED = 2
    COMPLETE = 3

    @classmethod
    def parse(cls, value: Any) -> "GamePhase":
        """Число леджера → GamePhase; неизвестное значение - UnknownPhaseError."""
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise UnknownPhaseError(
                f"Unknown round phase: {value!r}",
                details={"phase": repr(value)},
            ) from None


@dataclass
class OrchestratorStats:
    """Счётчики работы оркестратора (для /status и отчётов)."""

    started_at: datetime = field(default_factory=utc_now)
    ticks: int = 0
    skipped_ticks: int = 0
    rounds_started: int = 0
    rounds_locked: int = 0
    rounds_finished: int = 0
    rounds_cancelled: int = 0
    finals_recorded: int = 0
    rejections: int = 0
    errors: int = 0
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    last_activity: Optional[datetime] = None
    last_round_id: Optional[str] = None
    last_phase: Optional[str] = None

    def uptime_seconds(self) -> int:
        return int((utc_now() - self.started_at).total_seconds())

    def as_dict(self) -> Dict[str, Any]:
        return {
            "uptimeSec": self.uptime_seconds(),
            "ticks": self.ticks,
            "skippedTicks": self.skipped_ticks,
            "roundsStarted": self.rounds_started,
            "roundsLocked": self.rounds_locked,
            "roundsFinished": self.rounds_finished,
            "roundsCancelled": self.rounds_cancelled,
            "finalsRecorded": self.finals_recorded,
            "rejections": self.rejections,
            "errors": self.errors,
            "consecutiveErrors": self.consecutive_errors,
            "lastError": self.last_error,
            "lastActivity": iso(self.last_activity),
            "lastRoundId": self.last_round_id,
            "lastPhase": self.last_phase,
        }


@dataclass
class _FinishedRound:
    """Итог finish(), ещё не полностью сохранённый в историю."""

    state: LedgerState
    result: FinishResult
    proof: BeaconProofData
    finished_at: datetime
    proof_saved: bool = False

    def final_fields(self) -> Dict[str, Any]:
        return {
            "winner": self.result.winner,
            "finished_at": self.finished_at,
            "finish_tx_hash": self.result.tx.tx_hash,
            "seed_block_number": self.proof.block_number,
            "seed_block_hash": self.proof.seed,
            "seed_block_timestamp": self.proof.timestamp,
            "seed_producer": self.proof.producer,
        }


class RoundOrchestrator:
    """
    Конечный автомат раунда, управляемый состоянием леджера.

    Все зависимости передаются в конструктор (deps.build_container);
    wall_clock - unix-время (секунды), внедряется для тестов.
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        beacon: BeaconClient,
        store: RoundStore,
        *,
        notifier: Optional[NotificationService] = None,
        timer_duration: int = 60,
        progress_thresholds: Iterable[int] = (30, 10, 5, 0),
        future_blocks: int = 5,
        beacon_timeout: float = 300.0,
        max_consecutive_errors: int = 5,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.beacon = beacon
        self.store = store
        self.notifier = notifier
        self.timer_duration = int(timer_duration)
        self.progress_thresholds: FrozenSet[int] = frozenset(int(x) for x in progress_thresholds)
        self.future_blocks = int(future_blocks)
        self.beacon_timeout = float(beacon_timeout)
        self.max_consecutive_errors = int(max_consecutive_errors)
        self._wall_clock = wall_clock

        self.stats = OrchestratorStats()
        self._guard = SingleFlight("round_tick")
        self._seen_round: Optional[str] = None
        self._progress_logged: Set[Tuple[str, int]] = set()
        self._final_recorded: Optional[str] = None
        self._finished: Dict[str, _FinishedRound] = {}

    @property
    def busy(self) -> bool:
        return self._guard.held

    # ------------------------------------------------------------------
    # Граница тика
    # ------------------------------------------------------------------
    async def tick(self, now: Optional[float] = None) -> bool:
        """
        Одна проверка фазы. Никогда не бросает исключений.

        Returns:
            False - тик отброшен, потому что предыдущий ещё выполняется.
        """
        if not self._guard.try_acquire():
            self.stats.skipped_ticks += 1
            logger.debug("Tick skipped: previous tick still in progress")
            return False

        self.stats.ticks += 1
        try:
            await self._run_tick(self._wall_clock() if now is None else float(now))
        except LedgerRejectedError as exc:
            self.stats.rejections += 1
            logger.info("Ledger rejected action, will re-evaluate next tick: %s", exc.message)
            self._on_success()
        except UnknownPhaseError as exc:
            logger.critical("Unknown round phase from ledger", extra={"details": exc.details})
            self._on_error(exc, critical=True)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Error processing round state",
                extra={"error": str(exc), "error_type": type(exc).__name__},
                exc_info=not isinstance(exc, PotError),
            )
            self._on_error(exc)
        else:
            self._on_success()
        finally:
            self._guard.release()
        return True

    def _on_success(self) -> None:
        self.stats.consecutive_errors = 0

    def _on_error(self, exc: BaseException, *, critical: bool = False) -> None:
        self.stats.errors += 1
        self.stats.consecutive_errors += 1
        self.stats.last_error = f"{type(exc).__name__}: {exc}"

        code = exc.code if isinstance(exc, PotError) else type(exc).__name__
        self._notify(
            events.CRITICAL_ERROR if critical else events.ERROR,
            {"type": code, "message": str(exc)[:300], "round": self.stats.last_round_id},
        )
        if self.stats.consecutive_errors > self.max_consecutive_errors:
            logger.error(
                "Too many consecutive errors",
                extra={"consecutive_errors": self.stats.consecutive_errors},
            )
            self._notify(
                events.CONSECUTIVE_ERRORS,
                {
                    "type": "consecutive",
                    "count": self.stats.consecutive_errors,
                    "lastError": self.stats.last_error,
                },
            )

    def _notify(self, event: str, data: Dict[str, Any]) -> None:
        if self.notifier is not None:
            self.notifier.dispatch(event, data)

    async def _persist(self, what: str, round_id: str, call: Callable[[], Awaitable[Any]]) -> bool:
        """Запись в историю: ошибка логируется и не прерывает тик."""
        try:
            await call()
            return True
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to persist %s",
                what,
                extra={"round_id": round_id, "error": str(exc)},
            )
            return False

    # ------------------------------------------------------------------
    # Диспетчер фаз
    # ------------------------------------------------------------------
    async def _run_tick(self, now: float) -> None:
        state = await self.ledger.read_state()
        token = set_round_context(state.round_id)
        try:
            phase = GamePhase.parse(state.phase)
            self.stats.last_round_id = state.round_id
            self.stats.last_phase = phase.name
            logger.debug(
                "Round state check",
                extra={
                    "phase": phase.name,
                    "total_amount": state.total_amount,
                    "tickets": state.ticket_count,
                },
            )

            if phase is GamePhase.IDLE:
                await self._handle_idle(state, now)
            elif phase is GamePhase.BETTING:
                await self._handle_betting(state, now)
            elif phase is GamePhase.LOCKED:
                await self._handle_locked(state, now)
            elif phase is GamePhase.COMPLETE:
                await self._handle_complete(state, now)
            else:  # pragma: no cover - GamePhase.parse исчерпывает значения
                raise UnknownPhaseError(details={"phase": int(phase)})
        finally:
            reset_round_context(token)

    # ------------------------------------------------------------------
    # Idle
    # ------------------------------------------------------------------
    async def _handle_idle(self, state: LedgerState, now: float) -> None:
        if self._finished:
            await self._flush_finished()
        logger.info("Round in IDLE phase, starting new round")
        tx = await self.ledger.start()
        self.stats.rounds_started += 1
        self.stats.last_activity = utc_now()

        fresh = await self.ledger.read_state()
        logger.info(
            "New round started",
            extra={"new_round_id": fresh.round_id, "tx_hash": tx.tx_hash},
        )
        self._seen_round = fresh.round_id
        self._progress_logged.clear()
        await self._persist(
            "round start",
            fresh.round_id,
            lambda: self.store.create_round(
                fresh.round_id,
                {
                    "phase": int(GamePhase.BETTING),
                    "started_at": from_unix(fresh.start_time) if fresh.start_time else from_unix(now),
                    "total_amount": fresh.total_amount,
                    "ticket_count": fresh.ticket_count,
                    "participant_count": fresh.participant_count,
                    "start_tx_hash": tx.tx_hash,
                },
            ),
        )

    # ------------------------------------------------------------------
    # Betting
    # ------------------------------------------------------------------
    async def _handle_betting(self, state: LedgerState, now: float) -> None:
        if self._seen_round != state.round_id:
            # Раунд начат не нами (или до рестарта) - заводим запись.
            self._seen_round = state.round_id
            self._progress_logged.clear()
            await self._persist(
                "round discovery",
                state.round_id,
                lambda: self.store.create_round(
                    state.round_id,
                    {
                        "phase": int(GamePhase.BETTING),
                        "started_at": from_unix(state.start_time),
                        "total_amount": state.total_amount,
                        "ticket_count": state.ticket_count,
                        "participant_count": state.participant_count,
                    },
                ),
            )

        expiry = state.start_time + self.timer_duration
        time_remaining = expiry - int(now)

        if time_remaining in self.progress_thresholds:
            key = (state.round_id, time_remaining)
            if key not in self._progress_logged:
                self._progress_logged.add(key)
                logger.info(
                    "Round timer update",
                    extra={
                        "time_remaining": f"{time_remaining}s",
                        "total_amount": state.total_amount,
                        "tickets": state.ticket_count,
                    },
                )

        if now < expiry:
            return

        logger.info(
            "Round timer expired, locking round",
            extra={
                "total_amount": state.total_amount,
                "tickets": state.ticket_count,
                "participants": state.participant_count,
            },
        )
        tx = await self.ledger.lock()
        self.stats.rounds_locked += 1
        self.stats.last_activity = utc_now()
        await self._persist(
            "round lock",
            state.round_id,
            lambda: self.store.update_round(
                state.round_id,
                {
                    "phase": int(GamePhase.LOCKED),
                    "locked_at": from_unix(now),
                    "lock_tx_hash": tx.tx_hash,
                    "total_amount": state.total_amount,
                    "ticket_count": state.ticket_count,
                    "participant_count": state.participant_count,
                },
            ),
        )

    # ------------------------------------------------------------------
    # Locked
    # ------------------------------------------------------------------
    async def _handle_locked(self, state: LedgerState, now: float) -> None:
        if state.ticket_count == 0:
            logger.warning("No tickets sold, cancelling round")
            tx = await self.ledger.cancel()
            self.stats.rounds_cancelled += 1
            self.stats.last_activity = utc_now()
            await self._persist(
                "round cancel",
                state.round_id,
                lambda: self.store.update_round(
                    state.round_id,
                    {
                        "phase": int(GamePhase.COMPLETE),
                        "cancelled": True,
                        "finished_at": from_unix(now),
                        "cancel_tx_hash": tx.tx_hash,
                    },
                ),
            )
            self._notify(events.ROUND_CANCELLED, {"round": state.round_id, "txHash": tx.tx_hash})
            return

        logger.info(
            "Round in LOCKED phase, fetching beacon seed",
            extra={"total_amount": state.total_amount, "tickets": state.ticket_count},
        )
        proof = await self.beacon.future_seed(self.future_blocks, self.beacon_timeout)
        result = await self.ledger.finish(proof.seed)
        self.stats.rounds_finished += 1
        self.stats.last_activity = utc_now()
        logger.info(
            "Round finished",
            extra={
                "winner": result.winner,
                "tx_hash": result.tx.tx_hash,
                "beacon_block": proof.block_number,
            },
        )

        finished = _FinishedRound(state=state, result=result, proof=proof, finished_at=from_unix(now))
        self._finished[state.round_id] = finished
        await self._persist(
            "round finish",
            state.round_id,
            lambda: self.store.update_round(
                state.round_id,
                {"phase": int(GamePhase.COMPLETE), **finished.final_fields()},
            ),
        )
        await self._save_proof(finished)
        self._notify(
            events.WINNER_DRAWN,
            {
                "round": state.round_id,
                "winner": result.winner,
                "pot": state.total_amount,
                "tickets": state.ticket_count,
                "participants": state.participant_count,
                "beaconBlock": proof.block_number,
                "seed": proof.seed,
                "txHash": result.tx.tx_hash,
            },
        )

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------
    async def _handle_complete(self, state: LedgerState, now: float) -> None:
        finished = self._finished.get(state.round_id)
        if finished is not None and not finished.proof_saved:
            await self._save_proof(finished)
        if self._final_recorded != state.round_id:
            await self.record_final(state)
        self._forget_if_saved(state.round_id)

    async def _save_proof(self, finished: _FinishedRound) -> None:
        round_id = finished.state.round_id
        proof = finished.proof
        finished.proof_saved = await self._persist(
            "beacon proof",
            round_id,
            lambda: self.store.create_proof(
                round_id,
                block_number=proof.block_number,
                seed=proof.seed,
                timestamp=proof.timestamp,
                producer=proof.producer,
            ),
        )

    def _forget_if_saved(self, round_id: str) -> None:
        finished = self._finished.get(round_id)
        if finished is not None and finished.proof_saved and self._final_recorded == round_id:
            del self._finished[round_id]

    async def _flush_finished(self) -> None:
        """Дописать итоги раундов, чью фазу Complete мы не застали."""
        for round_id, finished in list(self._finished.items()):
            if not finished.proof_saved:
                await self._save_proof(finished)
            if self._final_recorded != round_id:
                await self.record_final(finished.state)
            self._forget_if_saved(round_id)

    async def record_final(self, state: LedgerState) -> bool:
        """
        Однократная запись итога раунда.

        Повторный вызов для того же раунда - no-op (локальная отметка плюс
        условная запись в хранилище). Если раунд завершён этим процессом,
        вместе с итогом пишутся победитель и сид.
        Returns: True, если итог записан сейчас.
        """
        if self._final_recorded == state.round_id:
            return False

        fields: Dict[str, Any] = {
            "phase": int(GamePhase.COMPLETE),
            "total_amount": state.total_amount,
            "ticket_count": state.ticket_count,
            "participant_count": state.participant_count,
        }
        finished = self._finished.get(state.round_id)
        if finished is not None:
            fields.update(finished.final_fields())

        written = False

        async def _write() -> None:
            nonlocal written
            written = await self.store.record_final(state.round_id, fields)

        if not await self._persist("final record", state.round_id, _write):
            return False  # повторим на следующем тике

        self._final_recorded = state.round_id
        if written:
            self.stats.finals_recorded += 1
            logger.info("Round final recorded")
        return written


__all__ = ["GamePhase", "OrchestratorStats", "RoundOrchestrator"]
# =============================================================================
# Пояснения «для чайника»:
#   • Почему безопасно повторять: если lock()/finish() упали, фаза леджера
#     не сдвинулась, и следующий тик вызовет то же действие ещё раз. Если же
#     действие успело пройти, леджер отклонит повтор (LedgerRejectedError),
#     а мы просто запишем это в лог на уровне info.
#   • Таймаут маяка оставляет раунд в Locked; следующий тик запросит новый,
#     более поздний блок (BeaconClient не даёт цели убывать).
# =============================================================================
