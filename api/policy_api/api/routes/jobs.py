from fastapi import APIRouter, Depends, HTTPException, Query, status

from policy_api.schemas.jobs import ClaimRequest, JobOut, ResultRequest
from policy_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=list[JobOut])
async def get_jobs(
    repository=Depends(get_repository),
    limit: int = Query(default=20, ge=1, le=200),
) -> list[JobOut]:
    try:
        queued = await repository.list_queued_jobs(limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [JobOut(**job) for job in queued]


@router.post("/{job_id}/claim", response_model=JobOut)
async def claim_job(job_id: str, payload: ClaimRequest, repository=Depends(get_repository)) -> JobOut:
    try:
        job = await repository.claim_job(job_id, worker_id=payload.worker_id, lease_seconds=payload.lease_seconds)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobOut(**job)


@router.post("/{job_id}/result", response_model=JobOut)
async def submit_job_result(job_id: str, payload: ResultRequest, repository=Depends(get_repository)) -> JobOut:
    try:
        job = await repository.submit_job_result(
            job_id,
            worker_id=payload.worker_id,
            status=payload.status,
            result_json=payload.result_json,
            error_json=payload.error_json,
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobOut(**job)
