from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from policy_api.api.deps import get_activation_service, get_diff_service, get_dry_run_service
from policy_api.schemas.dry_run import (
    DryRunDiffOut,
    DryRunItemOut,
    DryRunOut,
    DryRunRequest,
    DryRunSummaryOut,
    ReasonCountOut,
)
from policy_api.schemas.policies import PolicyCreateRequest, PolicyOut
from policy_api.schemas.runs import (
    ActionResultOut,
    DiffCountsOut,
    DiffReportOut,
    DiffSampleOut,
    ErrorEntryOut,
    PrepareOut,
    RunProgressOut,
    RunStatus,
    RunStatusOut,
)
from policy_api.services.activation import ActionResult, ActivationService, RunStatusReport
from policy_api.services.diff import DiffReport, DiffService
from policy_api.services.dry_run import DryRunOptions, DryRunResult, DryRunService
from policy_api.services.records import PolicyRecord
from policy_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    RunStateError,
)

router = APIRouter()


@router.get("", response_model=list[PolicyOut])
async def list_policies(service: ActivationService = Depends(get_activation_service)) -> list[PolicyOut]:
    try:
        policies = await service.list_policies()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [_policy_out(policy) for policy in policies]


@router.post("", response_model=PolicyOut, status_code=status.HTTP_201_CREATED)
async def create_policy(
    payload: PolicyCreateRequest,
    service: ActivationService = Depends(get_activation_service),
) -> PolicyOut:
    try:
        policy = await service.create_policy(payload.config.model_dump())
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _policy_out(policy)


@router.get("/runs", response_model=list[RunStatusOut])
async def list_runs(
    service: ActivationService = Depends(get_activation_service),
    run_status: RunStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[RunStatusOut]:
    try:
        reports = await service.list_runs(limit=limit, offset=offset, status=run_status)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [_run_status_out(report) for report in reports]


@router.get("/runs/{run_id}", response_model=RunStatusOut)
async def get_run_status(run_id: str, service: ActivationService = Depends(get_activation_service)) -> RunStatusOut:
    try:
        report = await service.status(run_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _run_status_out(report)


@router.post("/runs/{run_id}/promote", response_model=ActionResultOut, status_code=status.HTTP_201_CREATED)
async def promote_run(
    run_id: str,
    service: ActivationService = Depends(get_activation_service),
    actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
) -> ActionResultOut:
    try:
        result = await service.promote(run_id, promoted_by=actor_id or "system")
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _action_result_out(result)


@router.post("/runs/{run_id}/cancel", response_model=ActionResultOut, status_code=status.HTTP_201_CREATED)
async def cancel_run(run_id: str, service: ActivationService = Depends(get_activation_service)) -> ActionResultOut:
    try:
        result = await service.cancel(run_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _action_result_out(result)


@router.get("/runs/{run_id}/diff", response_model=DiffReportOut)
async def get_run_diff(
    run_id: str,
    service: DiffService = Depends(get_diff_service),
    sample_size: int | None = Query(default=None, ge=0),
) -> DiffReportOut:
    try:
        report = await service.diff(run_id, sample_size=sample_size)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RunStateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _diff_report_out(report)


@router.post("/dry-run", response_model=DryRunOut)
async def dry_run_policy(
    payload: DryRunRequest,
    service: DryRunService = Depends(get_dry_run_service),
) -> DryRunOut:
    result = await _execute_dry_run(payload, service)
    return DryRunOut(summary=_dry_run_summary_out(result), items=_dry_run_items_out(result))


@router.post("/dry-run/diff", response_model=DryRunDiffOut)
async def dry_run_policy_diff(
    payload: DryRunRequest,
    service: DryRunService = Depends(get_dry_run_service),
) -> DryRunDiffOut:
    result = await _execute_dry_run(payload, service)
    return DryRunDiffOut(
        summary=_dry_run_summary_out(result),
        items=_dry_run_items_out(result),
        current_policy_version=result.current_policy_version,
    )


@router.post("/{policy_id}/prepare", response_model=PrepareOut, status_code=status.HTTP_202_ACCEPTED)
async def prepare_policy(policy_id: str, service: ActivationService = Depends(get_activation_service)) -> PrepareOut:
    try:
        outcome = await service.prepare(policy_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PrepareOut(
        run_id=outcome.run_id,
        status=outcome.status,
        job_id=outcome.job_id,
        message=f"Evaluation run {outcome.run_id} started",
    )


@router.get("/{policy_id}", response_model=PolicyOut)
async def get_policy(policy_id: str, service: ActivationService = Depends(get_activation_service)) -> PolicyOut:
    try:
        policy = await service.get_policy(policy_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _policy_out(policy)


def _policy_out(policy: PolicyRecord) -> PolicyOut:
    return PolicyOut(
        id=policy.id,
        version=policy.version,
        is_active=policy.is_active,
        config=policy.config,
        created_at=policy.created_at,
        activated_at=policy.activated_at,
    )


def _run_status_out(report: RunStatusReport) -> RunStatusOut:
    run = report.run
    return RunStatusOut(
        id=run.id,
        status=run.status,
        target_policy_id=run.target_policy_id,
        target_policy_version=run.target_policy_version,
        progress=RunProgressOut(
            processed=run.processed,
            total=run.total_ready_snapshot,
            eligible=run.eligible,
            ineligible=run.ineligible,
            pending=run.pending,
            errors=run.errors,
        ),
        coverage=report.coverage,
        ready_to_promote=report.ready_to_promote,
        blocking_reasons=report.blocking_reasons,
        error_sample=[
            ErrorEntryOut(
                media_item_id=entry.media_item_id,
                error=entry.error,
                stack=entry.stack,
                timestamp=entry.timestamp,
            )
            for entry in run.error_sample
        ],
        started_at=run.started_at,
        finished_at=run.finished_at,
        promoted_at=run.promoted_at,
        promoted_by=run.promoted_by,
    )


def _action_result_out(result: ActionResult) -> ActionResultOut:
    return ActionResultOut(success=result.success, message=result.message, error=result.error)


def _diff_report_out(report: DiffReport) -> DiffReportOut:
    return DiffReportOut(
        run_id=report.run_id,
        target_policy_version=report.target_policy_version,
        current_policy_version=report.current_policy_version,
        counts=DiffCountsOut(
            regressions=report.counts.regressions,
            improvements=report.counts.improvements,
            net_change=report.counts.net_change,
        ),
        top_regressions=[
            DiffSampleOut(media_item_id=sample.media_item_id, title=sample.title, reason=sample.reason)
            for sample in report.top_regressions
        ],
        top_improvements=[
            DiffSampleOut(media_item_id=sample.media_item_id, title=sample.title, reason=sample.reason)
            for sample in report.top_improvements
        ],
    )


async def _execute_dry_run(payload: DryRunRequest, service: DryRunService) -> DryRunResult:
    options = DryRunOptions(
        mode=payload.options.mode,
        limit=payload.options.limit,
        media_type=payload.options.media_type,
        country=payload.options.country,
        sample_percent=payload.options.sample_percent,
    )
    try:
        return await service.execute(payload.policy.model_dump(), options)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


def _dry_run_summary_out(result: DryRunResult) -> DryRunSummaryOut:
    summary = result.summary
    return DryRunSummaryOut(
        mode=summary.mode,
        limit=summary.limit,
        total_evaluated=summary.total_evaluated,
        eligible=summary.eligible,
        ineligible=summary.ineligible,
        pending=summary.pending,
        review=summary.review,
        newly_eligible=summary.newly_eligible,
        newly_ineligible=summary.newly_ineligible,
        unchanged=summary.unchanged,
        reason_breakdown=[ReasonCountOut(reason=reason, count=count) for reason, count in summary.reason_breakdown],
        execution_time_ms=summary.execution_time_ms,
        truncated=summary.truncated,
    )


def _dry_run_items_out(result: DryRunResult) -> list[DryRunItemOut]:
    return [
        DryRunItemOut(
            media_item_id=item.media_item_id,
            title=item.title,
            current_status=item.current_status,
            proposed_status=item.proposed_status,
            reasons=item.reasons,
            status_changed=item.status_changed,
        )
        for item in result.items
    ]
