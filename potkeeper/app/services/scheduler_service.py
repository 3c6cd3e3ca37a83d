# -*- coding: utf-8 -*-
# potkeeper/app/services/scheduler_service.py
# =============================================================================
# Назначение кода:
#   Планировщик фоновых задач PotKeeper. Один будильник с базовым интервалом
#   GAME_CHECK_INTERVAL_SEC (≈1 с); у каждой задачи свои «ворота» интервала
#   (IntervalGate): тик оркестратора - каждый раз, баланс - раз в 5 минут,
#   отчёты - раз в час / 6 часов.
#
# Канон/инварианты:
#   • Задачи, которым пора, запускаются отдельными asyncio-задачами: долгий
#     тик оркестратора (ожидание блока маяка) не задерживает остальные.
#   • Задача, которая ещё выполняется, при наступлении срока пропускается
#     (не ставится в очередь).
#   • Сбой задачи не роняет цикл: ошибка логируется, растёт backoff (≤5 мин).
#   • Опциональный таймаут на задачу.
#
# Запреты:
#   • Планировщик не знает бизнес-логики - только вызывает корутины.
#   • Никаких блокирующих ожиданий: сон - через asyncio.wait_for(stop.wait()).
# =============================================================================

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from potkeeper.app.core.logging_core import get_logger

# Тип выполняемой корутины: async def job() -> Any
JobCallable = Callable[[], Awaitable[Any]]

logger = get_logger("potkeeper.scheduler")

BACKOFF_START_SEC = 5.0
BACKOFF_MAX_SEC = 300.0


# -----------------------------------------------------------------------------
# IntervalGate - «ворота» периодичности внутри общего будильника
# -----------------------------------------------------------------------------
@dataclass
class IntervalGate:
    """Пропускает задачу не чаще, чем раз в interval секунд (monotonic)."""

    interval: float
    last_run_at: Optional[float] = None

    def due(self, now: float) -> bool:
        if self.last_run_at is None:
            return True
        return (now - self.last_run_at) >= self.interval

    def mark(self, now: float) -> None:
        self.last_run_at = now


# -----------------------------------------------------------------------------
# Структура задачи
# -----------------------------------------------------------------------------
@dataclass
class _Job:
    name: str
    func: JobCallable
    gate: IntervalGate
    timeout: Optional[float] = None
    immediate: bool = True
    backoff_sec: float = BACKOFF_START_SEC
    consecutive_failures: int = 0
    runs: int = 0
    dropped: int = 0
    last_error: Optional[str] = None
    running: bool = False
    next_allowed_at: Optional[float] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class SchedulerService:
    """
    Планировщик с единым будильником.

    clock - monotonic-часы (внедряются в тестах вместе с run_single_tick()).
    """

    def __init__(
        self,
        *,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        stop_grace: float = 10.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("scheduler interval must be > 0")
        self.interval = float(interval)
        self.stop_grace = float(stop_grace)
        self._clock = clock
        self._jobs: Dict[str, _Job] = {}
        self._stop = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._running_tasks: Set[asyncio.Task] = set()

    # ----------------------------- Регистрация ------------------------------

    def add_job(
        self,
        name: str,
        func: JobCallable,
        *,
        every: Optional[float] = None,
        timeout: Optional[float] = None,
        immediate: bool = True,
    ) -> None:
        """
        Зарегистрировать задачу.

        every=None - каждый тик будильника; immediate=False - первый запуск
        только через every секунд после start().
        """
        if name in self._jobs:
            raise ValueError(f"job '{name}' already registered")
        self._jobs[name] = _Job(
            name=name,
            func=func,
            gate=IntervalGate(interval=float(every or 0.0)),
            timeout=timeout,
            immediate=immediate,
        )

    def register_defaults(
        self,
        *,
        round_tick: JobCallable,
        balance_check: JobCallable,
        health_report: JobCallable,
        stats_report: JobCallable,
        balance_every: float,
        health_every: float,
        stats_every: float,
        report_timeout: float = 60.0,
    ) -> None:
        """
        Стандартные задачи PotKeeper:
          • round_tick     - тик оркестратора, каждый будильник, без таймаута
                             (тик сам ограничен таймаутом маяка);
          • balance_check  - баланс кошелька оператора;
          • health_report  - health-отчёт админам;
          • stats_report   - сводка статистики.
        """
        self.add_job("round_tick", round_tick)
        self.add_job("balance_check", balance_check, every=balance_every, timeout=report_timeout)
        self.add_job(
            "health_report",
            health_report,
            every=health_every,
            timeout=report_timeout,
            immediate=False,
        )
        self.add_job(
            "stats_report",
            stats_report,
            every=stats_every,
            timeout=report_timeout,
            immediate=False,
        )
        logger.info("Scheduler: registered jobs: %s", list(self._jobs.keys()))

    # ------------------------------- Жизненный цикл -------------------------

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Запускает фоновый цикл; остановка - через stop()."""
        if self.running:
            logger.warning("Scheduler: already running")
            return
        self._stop.clear()
        now = self._clock()
        for job in self._jobs.values():
            if not job.immediate:
                job.gate.mark(now)
        logger.info(
            "Scheduler: start (%d jobs, interval=%ss)",
            len(self._jobs),
            self.interval,
        )
        self._loop_task = asyncio.create_task(self._loop(), name="scheduler:main")

    async def stop(self) -> None:
        """
        Останавливает цикл и ждёт выполняющиеся задачи не дольше stop_grace;
        оставшиеся отменяются.
        """
        self._stop.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._running_tasks:
            pending = list(self._running_tasks)
            _, not_done = await asyncio.wait(pending, timeout=self.stop_grace)
            for task in not_done:
                task.cancel()
            if not_done:
                await asyncio.gather(*not_done, return_exceptions=True)
                logger.warning("Scheduler: cancelled %d jobs on stop", len(not_done))

    async def _loop(self) -> None:
        """Главный цикл: каждые interval секунд запускает задачи, которым пора."""
        try:
            while not self._stop.is_set():
                self.run_single_tick()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Scheduler: cancelled")
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Scheduler: critical failure (loop)")
        finally:
            logger.info("Scheduler: stopped")

    # ------------------------------- Один тик --------------------------------

    def run_single_tick(self) -> List[asyncio.Task]:
        """
        Запускает все задачи, которым пора, и возвращает созданные asyncio-задачи.

        Выполняющаяся задача пропускается; задача в backoff ждёт next_allowed_at.
        """
        now = self._clock()
        launched: List[asyncio.Task] = []
        for job in self._jobs.values():
            if not job.gate.due(now):
                continue
            if job.next_allowed_at is not None and now < job.next_allowed_at:
                continue
            if job.running:
                job.dropped += 1
                logger.debug("Job %s: still running, skip", job.name)
                continue

            job.gate.mark(now)
            job.running = True
            task = asyncio.create_task(self._run_job(job), name=f"scheduler:job:{job.name}")
            job.task = task
            self._running_tasks.add(task)
            task.add_done_callback(self._running_tasks.discard)
            launched.append(task)
        return launched

    async def _run_job(self, job: _Job) -> None:
        try:
            if job.timeout is not None:
                await asyncio.wait_for(job.func(), timeout=job.timeout)
            else:
                await job.func()

            job.runs += 1
            job.consecutive_failures = 0
            job.last_error = None
            job.backoff_sec = BACKOFF_START_SEC
            job.next_allowed_at = None
        except asyncio.TimeoutError:
            self._fail(job, "timeout")
            logger.warning(
                "Job %s: timeout (fail=%s, backoff=%ss)",
                job.name,
                job.consecutive_failures,
                job.backoff_sec,
            )
        except Exception as e:  # noqa: BLE001
            self._fail(job, str(e))
            logger.exception(
                "Job %s: error (fail=%s, backoff=%ss): %s",
                job.name,
                job.consecutive_failures,
                job.backoff_sec,
                e,
            )
        finally:
            job.running = False

    def _fail(self, job: _Job, error: str) -> None:
        job.consecutive_failures += 1
        job.last_error = error
        job.next_allowed_at = self._clock() + job.backoff_sec
        job.backoff_sec = min(job.backoff_sec * 2, BACKOFF_MAX_SEC)

    # ------------------------------- Наблюдаемость ---------------------------

    def list_jobs(self) -> List[Dict[str, Any]]:
        """Краткая сводка по задачам для /status."""
        return [
            {
                "name": j.name,
                "everySec": j.gate.interval or self.interval,
                "running": j.running,
                "runs": j.runs,
                "dropped": j.dropped,
                "failures": j.consecutive_failures,
                "lastError": j.last_error,
                "backoffSec": j.backoff_sec,
            }
            for j in self._jobs.values()
        ]


__all__ = ["IntervalGate", "SchedulerService", "JobCallable"]
