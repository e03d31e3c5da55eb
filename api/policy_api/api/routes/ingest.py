from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from policy_api.api.deps import get_activation_service
from policy_api.schemas.ingest import (
    CatalogItemOut,
    CatalogPageOut,
    CounterIncrementRequest,
    CursorUpdateRequest,
    ErrorReportRequest,
    EvaluationBatchRequest,
    FinalizeOut,
    IngestAckOut,
    RunContextOut,
)
from policy_api.services.activation import ActivationService
from policy_api.services.records import CounterIncrements, ErrorEntry
from policy_api.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.get("/{run_id}", response_model=RunContextOut)
async def get_run_context(run_id: str, service: ActivationService = Depends(get_activation_service)) -> RunContextOut:
    try:
        run = await service.get_run(run_id)
        policy = await service.get_policy(run.target_policy_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RunContextOut(
        id=run.id,
        status=run.status,
        target_policy_id=run.target_policy_id,
        target_policy_version=run.target_policy_version,
        policy_config=policy.config,
        snapshot_cutoff=run.snapshot_cutoff,
        total_ready_snapshot=run.total_ready_snapshot,
        cursor=run.cursor,
    )


@router.get("/{run_id}/catalog", response_model=CatalogPageOut)
async def get_catalog_batch(
    run_id: str,
    service: ActivationService = Depends(get_activation_service),
    cursor: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=100, ge=1, le=1000),
) -> CatalogPageOut:
    try:
        items = await service.list_catalog_batch(run_id, cursor=cursor, limit=limit)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CatalogPageOut(
        items=[
            CatalogItemOut(
                id=item.id,
                title=item.title,
                trending_score=item.trending_score,
                attributes=item.attributes,
            )
            for item in items
        ],
        next_cursor=items[-1].id if items else None,
    )


@router.put("/{run_id}/cursor", response_model=IngestAckOut)
async def update_cursor(
    run_id: str,
    payload: CursorUpdateRequest,
    service: ActivationService = Depends(get_activation_service),
) -> IngestAckOut:
    try:
        applied = await service.update_cursor(run_id, payload.cursor)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return IngestAckOut(run_id=run_id, applied=applied)


@router.post("/{run_id}/counters", response_model=IngestAckOut)
async def increment_counters(
    run_id: str,
    payload: CounterIncrementRequest,
    service: ActivationService = Depends(get_activation_service),
) -> IngestAckOut:
    increments = CounterIncrements(
        processed=payload.processed,
        eligible=payload.eligible,
        ineligible=payload.ineligible,
        pending=payload.pending,
        errors=payload.errors,
    )
    try:
        applied = await service.increment_counters(run_id, increments)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return IngestAckOut(run_id=run_id, applied=applied)


@router.post("/{run_id}/errors", response_model=IngestAckOut)
async def record_error(
    run_id: str,
    payload: ErrorReportRequest,
    service: ActivationService = Depends(get_activation_service),
) -> IngestAckOut:
    entry = ErrorEntry(
        media_item_id=payload.media_item_id,
        error=payload.error,
        stack=payload.stack,
        timestamp=payload.timestamp or datetime.now(timezone.utc),
    )
    try:
        applied = await service.record_error(run_id, entry)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return IngestAckOut(run_id=run_id, applied=applied)


@router.post("/{run_id}/evaluations", response_model=IngestAckOut)
async def record_evaluations(
    run_id: str,
    payload: EvaluationBatchRequest,
    service: ActivationService = Depends(get_activation_service),
) -> IngestAckOut:
    try:
        count = await service.record_evaluations(
            run_id,
            [evaluation.model_dump() for evaluation in payload.evaluations],
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return IngestAckOut(run_id=run_id, applied=count > 0 or not payload.evaluations, count=count)


@router.post("/{run_id}/finalize", response_model=FinalizeOut)
async def finalize_run(run_id: str, service: ActivationService = Depends(get_activation_service)) -> FinalizeOut:
    try:
        result = await service.finalize(run_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return FinalizeOut(
        run_id=result.run_id,
        finalized=result.finalized,
        reason=result.reason,
        counters=result.counters,
    )
