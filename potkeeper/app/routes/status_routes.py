# -*- coding: utf-8 -*-
# potkeeper/app/routes/status_routes.py
# =============================================================================
# Назначение кода:
#   Операционные HTTP-ручки PotKeeper: живость процесса, сводка состояния
#   оркестратора/планировщика/маяка и аудит сида завершённого раунда.
#
# Канон/инварианты:
#   • Ручки только читают: ни одна не вызывает изменяющих методов леджера.
#   • Аудит сида идёт мимо оркестратора и не занимает его SingleFlight.
#
# Запреты:
#   • Нет пользовательского API ставок и билетов.
#   • В /status не попадают секреты: только Settings.debug_dump().
# =============================================================================

from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from potkeeper.app.core.logging_core import get_logger
from potkeeper.app.deps import Container, get_container

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

# -----------------------------------------------------------------------------
# Pydantic-схемы (ответы API)
# -----------------------------------------------------------------------------

class HealthOut(BaseModel):
    status: str
    version: str


class StatusOut(BaseModel):
    status: str = Field(..., description="healthy | degraded")
    busy: bool = Field(..., description="Тик оркестратора сейчас выполняется")
    stats: Dict[str, Any]
    jobs: List[Dict[str, Any]]
    beacon: Dict[str, Any]
    notifications: Dict[str, Any]
    config: Dict[str, str]


class ProofVerifyOut(BaseModel):
    roundId: str
    blockNumber: int
    seed: str
    matches: bool


# -----------------------------------------------------------------------------
# Ручки
# -----------------------------------------------------------------------------

@router.get("/health", response_model=HealthOut)
async def health(container: Container = Depends(get_container)) -> HealthOut:
    """Живость процесса без обращений к внешним системам."""
    return HealthOut(status="ok", version=container.settings.APP_VERSION)


@router.get("/status", response_model=StatusOut)
async def status_summary(container: Container = Depends(get_container)) -> StatusOut:
    stats = container.orchestrator.stats
    notifier = container.notifier
    return StatusOut(
        status="degraded" if stats.consecutive_errors else "healthy",
        busy=container.orchestrator.busy,
        stats=stats.as_dict(),
        jobs=container.scheduler.list_jobs(),
        beacon=container.beacon.status(),
        notifications={
            "enabled": notifier.enabled,
            "sent": notifier.sent,
            "suppressed": notifier.suppressed,
        },
        config=container.settings.debug_dump(),
    )


@router.get("/rounds/{round_id}/proof/verify", response_model=ProofVerifyOut)
async def verify_round_proof(
    round_id: str,
    container: Container = Depends(get_container),
) -> ProofVerifyOut:
    """
    Повторная проверка сида раунда по маяку.

    404 - доказательства нет (NotFoundError) или блок не найден на маяке.
    """
    result: Dict[str, Any] = await container.auditor.verify_round(round_id)
    logger.info("Proof audit requested", extra={"round_id": round_id, "matches": result["matches"]})
    return ProofVerifyOut(**result)


__all__ = ["router"]
