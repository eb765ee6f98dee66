"""
API Router for the Job Controller

Routes consumed by the operator console:
- Planning and dispatch
- Job queries, retry and cancellation
- Approval listing and decisions
- Skill catalog and policy updates
- Artifacts and status summary

Every route is a thin adapter: it validates the request body, calls the
JobOrchestrator and maps ControllerError subclasses to HTTP errors.
"""

import logging
from typing import Optional, Dict, Any, List

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .errors import ControllerError, ValidationError
from .job_model import Plan, FailurePolicy
from .orchestrator import JobOrchestrator

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logger = logging.getLogger("api")

# -----------------------------------------------------------------------------
# Router Setup
# -----------------------------------------------------------------------------
router = APIRouter(tags=["Job Controller"])


def get_orchestrator(request: Request) -> JobOrchestrator:
    """Get the orchestrator bound to the running app."""
    return request.app.state.orchestrator


def _http_error(e: ControllerError) -> HTTPException:
    if e.status_code >= 500:
        logger.error(f"Request failed: {e.message}")
    return HTTPException(status_code=e.status_code, detail=e.message)


def _failure_policy(value: Optional[str]) -> Optional[FailurePolicy]:
    if value is None:
        return None
    try:
        return FailurePolicy(value)
    except ValueError:
        valid = [p.value for p in FailurePolicy]
        raise ValidationError(f"Invalid failurePolicy '{value}'. Must be one of: {valid}")


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class PlanRequest(BaseModel):
    """Request to generate a plan from a free-text goal."""
    prompt: str = Field(..., min_length=1, description="Goal in natural language")
    constraints: Optional[Dict[str, Any]] = None


class DispatchRequest(BaseModel):
    """Dispatch a stored plan by id, or an inline plan."""
    planId: Optional[str] = None
    plan: Optional[Dict[str, Any]] = None
    failurePolicy: Optional[str] = None


class DispatchResponse(BaseModel):
    jobId: str


class RetryRequest(BaseModel):
    stepNo: Optional[int] = Field(None, ge=1)


class SkillPolicyRequest(BaseModel):
    policy: str


class DecisionRequest(BaseModel):
    """Decision on an approval addressed by path."""
    decision: str
    reason: Optional[str] = None


class ApprovalDecisionRequest(DecisionRequest):
    """Decision on an approval addressed in the body."""
    approvalId: str


# -----------------------------------------------------------------------------
# Planning and Dispatch
# -----------------------------------------------------------------------------
@router.post("/plan")
async def generate_plan(request: PlanRequest, http_request: Request) -> Dict[str, Any]:
    """Generate a plan for a goal. The plan is kept so it can be dispatched by id."""
    orchestrator = get_orchestrator(http_request)
    try:
        plan = await orchestrator.generate_plan(request.prompt, request.constraints)
    except ControllerError as e:
        raise _http_error(e)
    return plan.to_dict()


@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch_job(request: DispatchRequest, http_request: Request):
    """Create a job from a plan and start its first step."""
    orchestrator = get_orchestrator(http_request)
    try:
        failure_policy = _failure_policy(request.failurePolicy)
        if request.plan is not None:
            job = await orchestrator.dispatch(Plan.from_dict(request.plan), failure_policy)
        elif request.planId:
            job = await orchestrator.dispatch_plan_id(request.planId, failure_policy)
        else:
            raise ValidationError("Either 'planId' or 'plan' is required")
    except ControllerError as e:
        raise _http_error(e)
    return DispatchResponse(jobId=job.job_id)


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------
@router.get("/jobs")
async def list_jobs(
    http_request: Request,
    status: Optional[str] = Query(None, description="Filter by job status"),
    limit: Optional[int] = Query(None, ge=0, description="Maximum number of jobs"),
) -> List[Dict[str, Any]]:
    """List jobs, most recently updated first."""
    orchestrator = get_orchestrator(http_request)
    try:
        jobs = orchestrator.list_jobs(status=status, limit=limit)
    except ControllerError as e:
        raise _http_error(e)
    return [job.to_dict() for job in jobs]


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, http_request: Request) -> Dict[str, Any]:
    orchestrator = get_orchestrator(http_request)
    try:
        return orchestrator.get_job(job_id).to_dict()
    except ControllerError as e:
        raise _http_error(e)


@router.post("/jobs/{job_id}/retry")
async def retry_step(job_id: str, http_request: Request, request: Optional[RetryRequest] = None) -> Dict[str, Any]:
    """Retry a failed step (the given stepNo, or the first failed step)."""
    orchestrator = get_orchestrator(http_request)
    step_no = request.stepNo if request else None
    try:
        await orchestrator.retry_step(job_id, step_no)
    except ControllerError as e:
        raise _http_error(e)
    return {}


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, http_request: Request) -> Dict[str, Any]:
    orchestrator = get_orchestrator(http_request)
    try:
        return (await orchestrator.cancel_job(job_id)).to_dict()
    except ControllerError as e:
        raise _http_error(e)


# -----------------------------------------------------------------------------
# Artifacts
# -----------------------------------------------------------------------------
@router.get("/artifacts")
async def list_artifacts(
    http_request: Request,
    jobId: Optional[str] = Query(None, description="Only artifacts of this job"),
) -> List[Dict[str, Any]]:
    orchestrator = get_orchestrator(http_request)
    return [artifact.to_dict() for artifact in orchestrator.list_artifacts(jobId)]


# -----------------------------------------------------------------------------
# Skills
# -----------------------------------------------------------------------------
@router.get("/skills")
async def list_skills(http_request: Request) -> List[Dict[str, Any]]:
    orchestrator = get_orchestrator(http_request)
    return [skill.to_dict() for skill in orchestrator.list_skills()]


@router.patch("/skills/{skill_id}")
async def update_skill_policy(skill_id: str, request: SkillPolicyRequest, http_request: Request) -> Dict[str, Any]:
    """Set a skill's autonomy policy. Applies to jobs dispatched afterwards."""
    orchestrator = get_orchestrator(http_request)
    try:
        orchestrator.update_skill_policy(skill_id, request.policy)
    except ControllerError as e:
        raise _http_error(e)
    return {}


# -----------------------------------------------------------------------------
# Approvals
# -----------------------------------------------------------------------------
@router.get("/approvals")
async def list_approvals(
    http_request: Request,
    status: Optional[str] = Query(None, description="Filter by approval status"),
    jobId: Optional[str] = Query(None, description="Only approvals of this job"),
) -> List[Dict[str, Any]]:
    orchestrator = get_orchestrator(http_request)
    try:
        approvals = orchestrator.list_approvals(status=status, job_id=jobId)
    except ControllerError as e:
        raise _http_error(e)
    return [approval.to_dict() for approval in approvals]


@router.get("/approvals/{approval_id}")
async def get_approval(approval_id: str, http_request: Request) -> Dict[str, Any]:
    orchestrator = get_orchestrator(http_request)
    try:
        return orchestrator.get_approval(approval_id).to_dict()
    except ControllerError as e:
        raise _http_error(e)


@router.post("/approvals")
async def resolve_approval(request: ApprovalDecisionRequest, http_request: Request) -> Dict[str, Any]:
    """Approve or deny a pending approval."""
    orchestrator = get_orchestrator(http_request)
    try:
        approval = await orchestrator.resolve_approval(request.approvalId, request.decision, request.reason)
    except ControllerError as e:
        raise _http_error(e)
    return approval.to_dict()


@router.post("/approvals/{approval_id}")
async def resolve_approval_by_id(approval_id: str, request: DecisionRequest, http_request: Request) -> Dict[str, Any]:
    orchestrator = get_orchestrator(http_request)
    try:
        approval = await orchestrator.resolve_approval(approval_id, request.decision, request.reason)
    except ControllerError as e:
        raise _http_error(e)
    return approval.to_dict()


# -----------------------------------------------------------------------------
# Status
# -----------------------------------------------------------------------------
@router.get("/status")
async def get_status(http_request: Request) -> Dict[str, Any]:
    """Counts of steps and jobs by status, plus open approvals."""
    return get_orchestrator(http_request).get_status_summary()
