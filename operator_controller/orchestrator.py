"""
Job Orchestrator

Single owner of Job/JobStep/Approval/Artifact state. Accepts plans, creates
jobs, sequences step execution, gates critical steps behind approval and
exposes explicit retry and cancellation.

CONSTRAINTS:
- SEQUENTIAL STEPS: at most one step per job is running or awaiting approval;
  step N+1 never starts before step N is completed or failed
- GATE BEFORE EXECUTION: a critical step's skill is never invoked unless an
  approve decision exists for that step
- ONE OPEN APPROVAL per step at any time
- PER-JOB LOCK: commands against the same job are mutually exclusive;
  different jobs run concurrently without coordination
- NO AUTO-RETRY: failures are recorded on the step; retry is caller-initiated
- SKILL ERRORS NEVER ESCAPE: they are caught at the step boundary
"""

import asyncio
import copy
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from .errors import (
    ValidationError,
    NotFoundError,
    ConflictError,
    InvalidStateError,
    ExecutionError,
)
from .job_model import (
    StepStatus,
    JobStatus,
    ApprovalStatus,
    ApprovalDecision,
    FailurePolicy,
    Plan,
    PlanStep,
    Job,
    JobStep,
    Approval,
    Artifact,
    Skill,
    DENIED_LOG,
    CANCELLED_LOG,
    EXPIRED_LOG,
    INTERRUPTED_LOG,
    can_transition,
    generate_id,
    resolve_bindings,
)
from .job_store import JobStore
from .planner import Planner
from .skill_executor import SkillExecutor, SkillResult, StepContext
from .skill_registry import SkillRegistry

logger = logging.getLogger("orchestrator")


class JobOrchestrator:
    """
    Dispatch and progression logic for jobs.

    Args:
        store: record store (single writer: this orchestrator)
        skills: skill catalog used to resolve criticality at dispatch
        executor: performs each step's work
        planner: optional, needed only for generate_plan
        failure_policy: default policy for plans that do not set one
        approval_expiry_hours: pending approvals older than this expire (0 disables)
    """

    def __init__(
        self,
        store: JobStore,
        skills: SkillRegistry,
        executor: SkillExecutor,
        planner: Optional[Planner] = None,
        failure_policy: FailurePolicy = FailurePolicy.HALT,
        approval_expiry_hours: float = 0,
    ):
        self._store = store
        self._skills = skills
        self._executor = executor
        self._planner = planner
        self._failure_policy = failure_policy
        self._approval_expiry_hours = approval_expiry_hours
        self._locks: Dict[str, asyncio.Lock] = {}
        self._running: Dict[str, asyncio.Task] = {}

    @property
    def skills(self) -> SkillRegistry:
        return self._skills

    def _lock(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    # -------------------------------------------------------------------------
    # Planning and Dispatch
    # -------------------------------------------------------------------------

    async def generate_plan(self, goal: str, constraints: Optional[Dict[str, Any]] = None) -> Plan:
        """Ask the planner for a plan and keep it so it can be dispatched by id."""
        if self._planner is None:
            raise ValidationError("No planner configured")
        plan = await self._planner.plan(goal, constraints)
        self._store.save_plan(plan)
        self._store.flush()
        return plan

    async def dispatch(self, plan: Plan, failure_policy: Optional[FailurePolicy] = None) -> Job:
        """
        Create a job for the plan and start advancing step 1.

        Raises ValidationError (and creates nothing) if the plan is empty,
        references an unknown skill, or reuses the id of a stored plan with
        different steps.
        """
        if not plan.steps:
            raise ValidationError("Plan must contain at least one step")
        for position, plan_step in enumerate(plan.steps, start=1):
            if not self._skills.has(plan_step.skill_id):
                raise ValidationError(
                    f"Plan step {position} ('{plan_step.name}') references unknown skill '{plan_step.skill_id}'"
                )
        stored = self._store.get_plan(plan.plan_id)
        if stored is not None and stored.steps != plan.steps:
            raise ValidationError(
                f"Plan id '{plan.plan_id}' is already used by a different plan; plans are immutable"
            )

        # Criticality is resolved once, here, and never changes afterwards
        steps = [
            JobStep(
                step_no=position,
                name=plan_step.name,
                skill_id=plan_step.skill_id,
                critical=self._skills.is_critical(plan_step),
            )
            for position, plan_step in enumerate(plan.steps, start=1)
        ]
        now = datetime.utcnow()
        job = Job(
            job_id=generate_id("job"),
            plan_id=plan.plan_id,
            steps=steps,
            failure_policy=failure_policy or plan.failure_policy or self._failure_policy,
            created_at=now,
            updated_at=now,
        )

        if stored is None:
            self._store.save_plan(plan)
        self._store.save_job(job)
        self._store.record_transition(
            "job_dispatched",
            job_id=job.job_id,
            plan_id=plan.plan_id,
            steps=len(steps),
            critical_steps=[s.step_no for s in steps if s.critical],
        )
        logger.info(
            f"Dispatched {job.job_id} for plan {plan.plan_id} "
            f"({len(steps)} steps, policy={job.failure_policy.value})"
        )

        async with self._lock(job.job_id):
            self._advance_locked(job)
            self._commit(job)
            return self._snapshot(job)

    async def dispatch_plan_id(self, plan_id: str, failure_policy: Optional[FailurePolicy] = None) -> Job:
        """Dispatch a previously generated plan."""
        plan = self._store.get_plan(plan_id)
        if plan is None:
            raise ValidationError(f"Plan '{plan_id}' not found")
        return await self.dispatch(plan, failure_policy)

    async def advance(self, job_id: str) -> Job:
        """Move the job to its next step if nothing is in flight."""
        job = self._require_job(job_id)
        async with self._lock(job_id):
            self._advance_locked(job)
            self._commit(job)
            return self._snapshot(job)

    # -------------------------------------------------------------------------
    # Approvals
    # -------------------------------------------------------------------------

    async def resolve_approval(
        self,
        approval_id: str,
        decision: str,
        reason: Optional[str] = None,
    ) -> Approval:
        """
        Record a human decision on an open approval.

        approve: the step leaves NEEDS_APPROVAL and its skill is invoked.
        deny: the step fails with log "denied by approval" and the skill is
        never invoked.
        """
        approval = self._store.get_approval(approval_id)
        if approval is None:
            raise NotFoundError(f"Approval '{approval_id}' not found")
        try:
            decision = ApprovalDecision(decision)
        except ValueError:
            valid = [d.value for d in ApprovalDecision]
            raise ValidationError(f"Invalid decision '{decision}'. Must be one of: {valid}")

        async with self._lock(approval.job_id):
            if not approval.is_open:
                raise ConflictError(f"Approval '{approval_id}' is already {approval.status.value}")

            job = self._require_job(approval.job_id)
            step = job.get_step(approval.step_no)
            if step is None or step.status != StepStatus.NEEDS_APPROVAL:
                raise InvalidStateError(
                    f"Step {approval.step_no} of {job.job_id} is not awaiting approval"
                )

            approval.status = (
                ApprovalStatus.APPROVED if decision == ApprovalDecision.APPROVE else ApprovalStatus.DENIED
            )
            approval.reason = reason
            approval.decided_at = datetime.utcnow()
            self._store.record_transition(
                "approval_resolved",
                approval_id=approval_id,
                job_id=job.job_id,
                step_no=step.step_no,
                status=approval.status.value,
                reason=reason,
            )
            logger.info(f"Approval {approval_id} for {job.job_id} step {step.step_no}: {approval.status.value}")

            if decision == ApprovalDecision.APPROVE:
                self._run(job, step)
            else:
                self._fail(job, step, DENIED_LOG)
                self._advance_locked(job)

            self._commit(job)
            return copy.deepcopy(approval)

    async def expire_approvals(self, now: Optional[datetime] = None) -> List[Approval]:
        """Expire pending approvals older than the configured window."""
        if self._approval_expiry_hours <= 0:
            return []
        cutoff = (now or datetime.utcnow()) - timedelta(hours=self._approval_expiry_hours)

        expired = []
        for approval in self._store.list_approvals(status=ApprovalStatus.PENDING):
            if approval.created_at > cutoff:
                continue
            async with self._lock(approval.job_id):
                if not approval.is_open:
                    continue
                job = self._require_job(approval.job_id)
                step = job.get_step(approval.step_no)
                approval.status = ApprovalStatus.EXPIRED
                approval.decided_at = datetime.utcnow()
                self._store.record_transition(
                    "approval_expired",
                    approval_id=approval.approval_id,
                    job_id=job.job_id,
                    step_no=approval.step_no,
                )
                logger.info(f"Approval {approval.approval_id} expired ({job.job_id} step {approval.step_no})")
                if step is not None and step.status == StepStatus.NEEDS_APPROVAL:
                    self._fail(job, step, EXPIRED_LOG)
                    self._advance_locked(job)
                self._commit(job)
                expired.append(copy.deepcopy(approval))
        return expired

    # -------------------------------------------------------------------------
    # Retry and Cancellation
    # -------------------------------------------------------------------------

    async def retry_step(self, job_id: str, step_no: Optional[int] = None) -> Job:
        """
        Re-run a failed step with the same inputs.

        With step_no, that exact step must be failed; without it, the first
        failed step is retried. Raises InvalidStateError (no state change)
        otherwise.
        """
        job = self._require_job(job_id)
        async with self._lock(job_id):
            if job.cancelled:
                raise InvalidStateError(f"Job {job_id} was cancelled and cannot be retried")

            if step_no is None:
                step = next((s for s in job.steps if s.status == StepStatus.FAILED), None)
                if step is None:
                    raise InvalidStateError(f"Job {job_id} has no failed step to retry")
            else:
                step = job.get_step(step_no)
                if step is None:
                    raise NotFoundError(f"Job {job_id} has no step {step_no}")
                if step.status != StepStatus.FAILED:
                    raise InvalidStateError(
                        f"Step {step_no} of {job_id} is {step.status.value}, only failed steps can be retried"
                    )

            active = job.active_step()
            if active is not None:
                raise InvalidStateError(
                    f"Step {active.step_no} of {job_id} is {active.status.value}; retry once it finishes"
                )

            self._store.record_transition("retry_requested", job_id=job_id, step_no=step.step_no)
            logger.info(f"Retrying {job_id} step {step.step_no} (attempt {step.attempts + 1})")
            self._start_step(job, step)
            self._commit(job)
            return self._snapshot(job)

    async def cancel_job(self, job_id: str) -> Job:
        """
        Halt a job: unfinished steps fail with log "cancelled", open
        approvals are closed and any in-flight skill call is abandoned.
        """
        job = self._require_job(job_id)
        async with self._lock(job_id):
            if job.cancelled:
                return self._snapshot(job)
            if job.status == JobStatus.COMPLETED:
                raise InvalidStateError(f"Job {job_id} already completed")

            job.cancelled = True
            for step in job.steps:
                if step.status in (StepStatus.PENDING, StepStatus.RUNNING, StepStatus.NEEDS_APPROVAL):
                    self._fail(job, step, CANCELLED_LOG)

            for approval in self._store.list_approvals(status=ApprovalStatus.PENDING, job_id=job_id):
                approval.status = ApprovalStatus.CANCELLED
                approval.reason = "job cancelled"
                approval.decided_at = datetime.utcnow()
                self._store.record_transition(
                    "approval_cancelled",
                    approval_id=approval.approval_id,
                    job_id=job_id,
                    step_no=approval.step_no,
                )

            task = self._running.get(job_id)
            if task is not None and not task.done():
                task.cancel()

            self._store.record_transition("job_cancelled", job_id=job_id)
            logger.info(f"Cancelled {job_id}")
            self._commit(job)
            return self._snapshot(job)

    # -------------------------------------------------------------------------
    # Queries (Read-Only)
    # -------------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        return self._snapshot(self._require_job(job_id))

    def list_jobs(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[Job]:
        """Jobs ordered by most-recently-updated first."""
        status_filter = None
        if status:
            try:
                status_filter = JobStatus(status)
            except ValueError:
                valid = [s.value for s in JobStatus]
                raise ValidationError(f"Invalid status '{status}'. Must be one of: {valid}")
        if limit is not None and limit < 0:
            raise ValidationError("limit must not be negative")
        return [self._snapshot(j) for j in self._store.list_jobs(status_filter, limit)]

    def get_approval(self, approval_id: str) -> Approval:
        approval = self._store.get_approval(approval_id)
        if approval is None:
            raise NotFoundError(f"Approval '{approval_id}' not found")
        return copy.deepcopy(approval)

    def list_approvals(self, status: Optional[str] = None, job_id: Optional[str] = None) -> List[Approval]:
        status_filter = None
        if status:
            try:
                status_filter = ApprovalStatus(status)
            except ValueError:
                valid = [s.value for s in ApprovalStatus]
                raise ValidationError(f"Invalid status '{status}'. Must be one of: {valid}")
        return [copy.deepcopy(a) for a in self._store.list_approvals(status_filter, job_id)]

    def list_artifacts(self, job_id: Optional[str] = None) -> List[Artifact]:
        return self._store.list_artifacts(job_id)

    def list_skills(self) -> List[Skill]:
        return [copy.copy(s) for s in self._skills.list_skills()]

    def update_skill_policy(self, skill_id: str, policy: str) -> Skill:
        return copy.copy(self._skills.update_policy(skill_id, policy))

    def get_status_summary(self) -> Dict[str, Any]:
        """Counts of steps and jobs by status, plus open approvals."""
        step_counts = Counter()
        job_counts = Counter()
        for job in self._store.all_jobs():
            job_counts[job.status.value] += 1
            for step in job.steps:
                step_counts[step.status.value] += 1
        return {
            "steps": {s.value: step_counts.get(s.value, 0) for s in StepStatus},
            "jobs": {s.value: job_counts.get(s.value, 0) for s in JobStatus},
            "openApprovals": len(self._store.list_approvals(status=ApprovalStatus.PENDING)),
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def load_state(self) -> int:
        """Load the persisted snapshot into the store. Returns the job count."""
        return self._store.load()

    async def recover(self) -> int:
        """
        Reconcile state loaded from disk after a restart.

        Steps left RUNNING were interrupted mid-call: they fail with log
        "interrupted by restart" (retry stays explicit). Jobs then advance
        as their failure policy allows. Returns the number of interrupted steps.
        """
        interrupted = 0
        for job in self._store.all_jobs():
            async with self._lock(job.job_id):
                for step in job.steps:
                    if step.status == StepStatus.RUNNING:
                        logger.warning(f"Step {step.step_no} of {job.job_id} was interrupted by restart")
                        self._fail(job, step, INTERRUPTED_LOG)
                        interrupted += 1
                self._advance_locked(job)
                self._commit(job)
        return interrupted

    async def wait_idle(self, job_id: Optional[str] = None) -> None:
        """Wait until no skill call is in flight (for one job, or all)."""
        while True:
            tasks = [
                task for jid, task in self._running.items()
                if (job_id is None or jid == job_id) and not task.done()
            ]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Abandon in-flight skill calls and release the executor."""
        tasks = [t for t in self._running.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running.clear()
        self._store.flush()
        await self._executor.close()

    # -------------------------------------------------------------------------
    # Internal: Progression (call with the job's lock held)
    # -------------------------------------------------------------------------

    def _advance_locked(self, job: Job) -> None:
        if job.cancelled or job.active_step() is not None:
            return
        if job.failure_policy == FailurePolicy.HALT and any(s.status == StepStatus.FAILED for s in job.steps):
            return

        step = next((s for s in job.steps if s.status == StepStatus.PENDING), None)
        if step is None:
            logger.info(f"{job.job_id} finished: {job.status.value}")
            return
        try:
            self._start_step(job, step)
        except Exception as e:
            logger.error(f"Could not start {job.job_id} step {step.step_no}: {e!r}")
            if step.status == StepStatus.PENDING:
                self._fail(job, step, f"Could not start step: {type(e).__name__}: {e}")

    def _start_step(self, job: Job, step: JobStep) -> None:
        """Gate check, then run. Inputs are resolved once and reused on retry."""
        plan_step = self._plan_step(job, step.step_no)
        if step.inputs is None:
            step.inputs = resolve_bindings(dict(plan_step.inputs), self._binding_context(job, step.step_no))

        if step.critical and not self._store.has_approved(job.job_id, step.step_no):
            self._open_gate(job, step, plan_step)
            return
        self._run(job, step)

    def _open_gate(self, job: Job, step: JobStep, plan_step: PlanStep) -> None:
        approval = self._store.open_approval_for(job.job_id, step.step_no)
        if approval is None:
            approval = Approval(
                approval_id=generate_id("apr"),
                job_id=job.job_id,
                step_no=step.step_no,
                step_name=step.name,
                skill_id=step.skill_id,
                request_reason=self._skills.gate_reason(plan_step),
                inputs=dict(step.inputs or {}),
            )
            self._store.save_approval(approval)
            self._store.record_transition(
                "approval_created",
                approval_id=approval.approval_id,
                job_id=job.job_id,
                step_no=step.step_no,
            )
            logger.info(f"Approval {approval.approval_id} requested for {job.job_id} step {step.step_no}")

        step.approval_id = approval.approval_id
        self._set_status(job, step, StepStatus.NEEDS_APPROVAL)

    def _run(self, job: Job, step: JobStep) -> None:
        self._set_status(job, step, StepStatus.RUNNING)
        step.attempts += 1
        step.log = None
        step.started_at = datetime.utcnow()
        step.finished_at = None

        context = StepContext(job_id=job.job_id, step_no=step.step_no, attempt=step.attempts)
        task = asyncio.create_task(
            self._execute(step.skill_id, dict(step.inputs or {}), context)
        )
        self._running[job.job_id] = task
        task.add_done_callback(lambda t, job_id=job.job_id: self._on_task_done(job_id, t))

    async def _execute(self, skill_id: str, inputs: Dict[str, Any], context: StepContext) -> None:
        """Invoke the skill outside the lock, then record the outcome under it."""
        result: Optional[SkillResult] = None
        error: Optional[ExecutionError] = None
        try:
            result = await self._executor.execute(skill_id, inputs, context)
        except ExecutionError as e:
            error = e
        except Exception as e:
            error = ExecutionError(skill_id, f"{type(e).__name__}: {e}", cause=e)

        async with self._lock(context.job_id):
            job = self._require_job(context.job_id)
            step = job.get_step(context.step_no)
            if step is None or step.status != StepStatus.RUNNING or step.attempts != context.attempt:
                logger.warning(
                    f"Discarding result of {context.job_id} step {context.step_no} "
                    f"attempt {context.attempt}: step is no longer running"
                )
                return

            if error is None:
                try:
                    self._complete(job, step, result)
                except Exception as e:
                    error = ExecutionError(
                        skill_id, f"Invalid result from skill: {type(e).__name__}: {e}", cause=e
                    )

            if error is not None:
                logger.warning(f"{context.job_id} step {context.step_no} failed: {error.message}")
                self._fail(job, step, error.message)

            self._advance_locked(job)
            self._commit(job)

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._running.get(job_id) is task:
            del self._running[job_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Step execution task for {job_id} crashed: {task.exception()!r}")

    def _complete(self, job: Job, step: JobStep, result: SkillResult) -> None:
        """Record a successful result. Nothing is written until the whole result is valid."""
        created_at = datetime.utcnow().isoformat()
        artifacts = [
            Artifact(
                artifact_id=generate_id("art"),
                job_id=job.job_id,
                step_no=step.step_no,
                name=ref.name,
                type=ref.type,
                url=ref.url,
                created_at=created_at,
            )
            for ref in result.artifacts
        ]
        outputs = dict(result.outputs)

        for artifact in artifacts:
            self._store.add_artifact(artifact)
            step.artifacts.append(artifact.artifact_id)

        step.outputs = outputs
        step.log = result.log
        step.finished_at = datetime.utcnow()
        self._set_status(job, step, StepStatus.COMPLETED)

    def _fail(self, job: Job, step: JobStep, log: str) -> None:
        step.log = log
        step.finished_at = datetime.utcnow()
        self._set_status(job, step, StepStatus.FAILED)

    def _set_status(self, job: Job, step: JobStep, target: StepStatus) -> None:
        if not can_transition(step.status, target):
            raise InvalidStateError(
                f"Step {step.step_no} of {job.job_id} cannot move {step.status.value} -> {target.value}"
            )
        previous = step.status
        step.status = target
        job.updated_at = datetime.utcnow()
        self._store.record_transition(
            "step",
            job_id=job.job_id,
            step_no=step.step_no,
            from_status=previous.value,
            to_status=target.value,
            log=step.log,
        )
        logger.info(f"{job.job_id} step {step.step_no}: {previous.value} -> {target.value}")

    # -------------------------------------------------------------------------
    # Internal: Helpers
    # -------------------------------------------------------------------------

    def _require_job(self, job_id: str) -> Job:
        job = self._store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return job

    def _plan_step(self, job: Job, step_no: int) -> PlanStep:
        plan = self._store.get_plan(job.plan_id)
        if plan is None:
            raise NotFoundError(f"Plan '{job.plan_id}' for {job.job_id} not found")
        return plan.steps[step_no - 1]

    def _binding_context(self, job: Job, step_no: int) -> Dict[str, Any]:
        """Outputs of earlier completed steps (later steps win), plus job_id and date."""
        context: Dict[str, Any] = {
            "job_id": job.job_id,
            "date": datetime.utcnow().date().isoformat(),
        }
        for step in job.steps[:step_no - 1]:
            if step.status == StepStatus.COMPLETED:
                context.update(step.outputs)
        return context

    def _commit(self, job: Job) -> None:
        self._store.save_job(job)
        self._store.flush()

    def _snapshot(self, job: Job) -> Job:
        return copy.deepcopy(job)
