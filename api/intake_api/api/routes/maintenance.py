from fastapi import APIRouter, Depends, HTTPException, Query, status

from intake_api.core.config import Settings, get_settings
from intake_api.core.security import get_machine_principal
from intake_api.schemas.maintenance import RepairRunOut
from intake_api.services.repair import RepairService
from intake_api.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


def get_repair_service(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> RepairService:
    return RepairService(repository, grace_seconds=settings.repair_grace_seconds)


def _require_maintenance_scope(principal) -> None:
    try:
        principal.require_scopes({"maintenance:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.post("/link-candidates", response_model=RepairRunOut)
async def link_candidates(
    principal=Depends(get_machine_principal),
    service: RepairService = Depends(get_repair_service),
    limit: int = Query(default=100, ge=1, le=500),
) -> RepairRunOut:
    _require_maintenance_scope(principal)
    try:
        result = await service.link_unlinked_applications(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RepairRunOut(task="link-candidates", scanned=result.scanned, repaired=result.repaired, failed=result.failed)


@router.post("/replay-events", response_model=RepairRunOut)
async def replay_events(
    principal=Depends(get_machine_principal),
    service: RepairService = Depends(get_repair_service),
    limit: int = Query(default=100, ge=1, le=500),
) -> RepairRunOut:
    _require_maintenance_scope(principal)
    try:
        result = await service.replay_missing_events(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RepairRunOut(task="replay-events", scanned=result.scanned, repaired=result.repaired, failed=result.failed)


@router.post("/recount-metrics", response_model=RepairRunOut)
async def recount_metrics(
    principal=Depends(get_machine_principal),
    service: RepairService = Depends(get_repair_service),
    limit: int = Query(default=100, ge=1, le=500),
) -> RepairRunOut:
    _require_maintenance_scope(principal)
    try:
        result = await service.recount_post_metrics(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RepairRunOut(task="recount-metrics", scanned=result.scanned, repaired=result.repaired, failed=result.failed)
