"""
Job Data Model

Plans, Jobs, JobSteps, Approvals, Artifacts and Skills, plus the JobStep
transition table and the derived Job status.

State machine per JobStep:

    PENDING ──> RUNNING ──> COMPLETED
       │          │  ^
       │          v  │ (retry)
       │        FAILED <──────────────┐
       │          │                   │ (deny / cancel / expiry)
       └──> NEEDS_APPROVAL ───────────┘
                  │
                  └──> RUNNING (approve)

The approval gate is checked BEFORE the skill runs: a critical step moves
straight from PENDING (or FAILED, on retry) to NEEDS_APPROVAL, so it is
never observed RUNNING without an approved Approval.

Wire format (to_dict/from_dict) uses the console's camelCase field names.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Set, Tuple

from .errors import ValidationError


# -----------------------------------------------------------------------------
# Step Log Messages
# -----------------------------------------------------------------------------
DENIED_LOG = "denied by approval"
CANCELLED_LOG = "cancelled"
EXPIRED_LOG = "approval expired"
INTERRUPTED_LOG = "interrupted by restart"


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class StepStatus(str, Enum):
    """JobStep execution states."""
    PENDING = "pending"
    RUNNING = "running"
    NEEDS_APPROVAL = "needs_approval"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def terminal_states(cls) -> Set["StepStatus"]:
        """States after which the next step may begin."""
        return {cls.COMPLETED, cls.FAILED}

    @classmethod
    def active_states(cls) -> Set["StepStatus"]:
        """States that block any other step of the same job."""
        return {cls.RUNNING, cls.NEEDS_APPROVAL}


class JobStatus(str, Enum):
    """Overall job status. Derived from the steps, never stored."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ApprovalStatus(str, Enum):
    """
    Approval gate status.

    EXPIRED and CANCELLED close a gate without a human decision.
    """
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ApprovalDecision(str, Enum):
    """Decisions a human can submit for an approval."""
    APPROVE = "approve"
    DENY = "deny"


class SkillPolicy(str, Enum):
    """
    Per-skill autonomy policy.

    When set it takes precedence over the plan step's own critical flag:
    - ASSIST: no autonomous action, always gated
    - APPROVE: always gated
    - AUTO_SAFE: never gated
    """
    ASSIST = "assist"
    APPROVE = "approve"
    AUTO_SAFE = "auto_safe"


class FailurePolicy(str, Enum):
    """What the orchestrator does after a step fails."""
    HALT = "halt"
    CONTINUE = "continue"


# -----------------------------------------------------------------------------
# Step Transition Rules
# -----------------------------------------------------------------------------
VALID_STEP_TRANSITIONS: Dict[StepStatus, List[StepStatus]] = {
    StepStatus.PENDING: [
        StepStatus.RUNNING,
        StepStatus.NEEDS_APPROVAL,  # Gate checked before running
        StepStatus.FAILED,          # Cancelled before it started
    ],
    StepStatus.RUNNING: [
        StepStatus.COMPLETED,
        StepStatus.FAILED,
    ],
    StepStatus.NEEDS_APPROVAL: [
        StepStatus.RUNNING,  # Approved
        StepStatus.FAILED,   # Denied, expired or cancelled
    ],
    StepStatus.COMPLETED: [],  # Terminal state
    StepStatus.FAILED: [
        StepStatus.RUNNING,         # Retry
        StepStatus.NEEDS_APPROVAL,  # Retry of a critical step with no approval on record
    ],
}


def can_transition(current: StepStatus, target: StepStatus) -> bool:
    """Check if a JobStep transition is valid."""
    return target in VALID_STEP_TRANSITIONS.get(current, [])


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def generate_id(prefix: str) -> str:
    """Generate a sortable, unique record id such as job-20260118093000-1a2b3c4d."""
    timestamp = datetime.utcnow()
    return f"{prefix}-{timestamp.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _require(data: Dict[str, Any], key: str, what: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ValidationError(f"{what} is missing required field '{key}'")
    return value


# -----------------------------------------------------------------------------
# Skill
# -----------------------------------------------------------------------------
@dataclass
class Skill:
    """A named capability with an autonomy policy."""
    skill_id: str
    name: str
    description: str = ""
    policy: Optional[SkillPolicy] = None
    critical_by_default: bool = False
    webhook: Optional[str] = None
    estimated_seconds: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.skill_id,
            "name": self.name,
            "description": self.description,
            "policy": self.policy.value if self.policy else None,
            "criticalByDefault": self.critical_by_default,
            "webhook": self.webhook,
            "estimatedSeconds": self.estimated_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Skill":
        skill_id = _require(data, "id", "Skill")
        policy = data.get("policy")
        try:
            policy = SkillPolicy(policy) if policy else None
        except ValueError:
            raise ValidationError(f"Skill '{skill_id}' has invalid policy: {policy}")
        return cls(
            skill_id=skill_id,
            name=data.get("name") or skill_id,
            description=data.get("description", ""),
            policy=policy,
            critical_by_default=bool(data.get("criticalByDefault", data.get("critical", False))),
            webhook=data.get("webhook"),
            estimated_seconds=data.get("estimatedSeconds"),
        )


# -----------------------------------------------------------------------------
# Plan (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class PlanStep:
    """One step of a plan, bound to a skill."""
    step_id: str
    skill_id: str
    name: str
    description: str = ""
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Tuple[str, ...] = ()
    critical: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.step_id,
            "skillId": self.skill_id,
            "name": self.name,
            "description": self.description,
            "inputs": dict(self.inputs),
            "outputs": list(self.outputs),
            "critical": self.critical,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], position: int) -> "PlanStep":
        if not isinstance(data, dict):
            raise ValidationError(f"Plan step {position} must be an object")
        skill_id = data.get("skillId") or data.get("tool")
        if not skill_id:
            raise ValidationError(f"Plan step {position} is missing required field 'skillId'")
        inputs = data.get("inputs") or {}
        if not isinstance(inputs, dict):
            raise ValidationError(f"Plan step {position} inputs must be an object")
        return cls(
            step_id=str(data.get("id") or position),
            skill_id=skill_id,
            name=data.get("name") or skill_id,
            description=data.get("description", ""),
            inputs=inputs,
            outputs=tuple(data.get("outputs") or ()),
            critical=bool(data.get("critical", False)),
        )


@dataclass(frozen=True)
class Plan:
    """
    Ordered, immutable sequence of PlanSteps produced for one goal.

    Referenced (not owned) by the Jobs dispatched from it.
    """
    plan_id: str
    steps: Tuple[PlanStep, ...]
    goal: str = ""
    estimated_time: Optional[str] = None
    failure_policy: Optional[FailurePolicy] = None
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def __post_init__(self):
        if not isinstance(self.steps, tuple):
            raise ValueError("steps must be a tuple for immutability")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.plan_id,
            "goal": self.goal,
            "steps": [step.to_dict() for step in self.steps],
            "estimatedTime": self.estimated_time,
            "failurePolicy": self.failure_policy.value if self.failure_policy else None,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        if not isinstance(data, dict):
            raise ValidationError("Plan must be an object")
        raw_steps = data.get("steps")
        if raw_steps is None:
            raise ValidationError("Plan is missing required field 'steps'")
        if not isinstance(raw_steps, list):
            raise ValidationError("Plan steps must be a list")
        failure_policy = data.get("failurePolicy")
        try:
            failure_policy = FailurePolicy(failure_policy) if failure_policy else None
        except ValueError:
            raise ValidationError(f"Invalid failurePolicy: {failure_policy}")
        return cls(
            plan_id=data.get("id") or generate_id("plan"),
            steps=tuple(PlanStep.from_dict(s, i) for i, s in enumerate(raw_steps, start=1)),
            goal=data.get("goal", ""),
            estimated_time=data.get("estimatedTime"),
            failure_policy=failure_policy,
            created_at=data.get("createdAt") or datetime.utcnow().isoformat(),
        )


# -----------------------------------------------------------------------------
# Job and JobStep (Mutated only by the orchestrator)
# -----------------------------------------------------------------------------
@dataclass
class JobStep:
    """One step's execution record within a Job."""
    step_no: int  # 1-based, matches plan order
    name: str
    skill_id: str
    critical: bool  # Fixed at dispatch time
    status: StepStatus = StepStatus.PENDING
    log: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    inputs: Optional[Dict[str, Any]] = None  # Resolved on first run, reused on retry
    outputs: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    approval_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self, job_id: str) -> Dict[str, Any]:
        return {
            "id": f"{job_id}-{self.step_no}",
            "stepNo": self.step_no,
            "name": self.name,
            "skillId": self.skill_id,
            "critical": self.critical,
            "status": self.status.value,
            "logs": self.log,
            "artifacts": list(self.artifacts),
            "inputs": self.inputs,
            "outputs": dict(self.outputs),
            "attempts": self.attempts,
            "approvalId": self.approval_id,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobStep":
        return cls(
            step_no=data["stepNo"],
            name=data["name"],
            skill_id=data["skillId"],
            critical=data.get("critical", False),
            status=StepStatus(data["status"]),
            log=data.get("logs"),
            artifacts=list(data.get("artifacts") or []),
            inputs=data.get("inputs"),
            outputs=dict(data.get("outputs") or {}),
            attempts=data.get("attempts", 0),
            approval_id=data.get("approvalId"),
            started_at=_parse_dt(data.get("startedAt")),
            finished_at=_parse_dt(data.get("finishedAt")),
        )


@dataclass
class Job:
    """One dispatched execution of a Plan. Never deleted."""
    job_id: str
    plan_id: str
    steps: List[JobStep]
    failure_policy: FailurePolicy = FailurePolicy.HALT
    cancelled: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    update_seq: int = 0  # Tie-breaker for ordering by updated_at

    @property
    def status(self) -> JobStatus:
        return derive_job_status(self.steps)

    def get_step(self, step_no: int) -> Optional[JobStep]:
        if 1 <= step_no <= len(self.steps):
            return self.steps[step_no - 1]
        return None

    def active_step(self) -> Optional[JobStep]:
        """The step currently running or awaiting approval, if any."""
        for step in self.steps:
            if step.status in StepStatus.active_states():
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "planId": self.plan_id,
            "status": self.status.value,
            "failurePolicy": self.failure_policy.value,
            "cancelled": self.cancelled,
            "steps": [step.to_dict(self.job_id) for step in self.steps],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "updateSeq": self.update_seq,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            job_id=data["id"],
            plan_id=data["planId"],
            steps=[JobStep.from_dict(s) for s in data.get("steps", [])],
            failure_policy=FailurePolicy(data.get("failurePolicy", FailurePolicy.HALT.value)),
            cancelled=data.get("cancelled", False),
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
            update_seq=data.get("updateSeq", 0),
        )


def derive_job_status(steps: List[JobStep]) -> JobStatus:
    """
    Derive the overall job status from its steps.

    - COMPLETED: every step completed
    - PENDING: no step has started
    - FAILED: a step failed and no later step is running, awaiting
      approval or completed, or every step is terminal
    - RUNNING: anything else (a step is active, or the job is between steps)
    """
    statuses = [step.status for step in steps]
    if statuses and all(s == StepStatus.COMPLETED for s in statuses):
        return JobStatus.COMPLETED
    if all(s == StepStatus.PENDING for s in statuses):
        return JobStatus.PENDING

    failed_positions = [i for i, s in enumerate(statuses) if s == StepStatus.FAILED]
    if failed_positions:
        if all(s in StepStatus.terminal_states() for s in statuses):
            return JobStatus.FAILED
        later = statuses[failed_positions[-1] + 1:]
        progressing = StepStatus.active_states() | {StepStatus.COMPLETED}
        if not any(s in progressing for s in later):
            return JobStatus.FAILED
    return JobStatus.RUNNING


# -----------------------------------------------------------------------------
# Approval
# -----------------------------------------------------------------------------
@dataclass
class Approval:
    """
    Gate on exactly one critical JobStep.

    At most one PENDING approval exists per (job_id, step_no).
    """
    approval_id: str
    job_id: str
    step_no: int
    step_name: str
    skill_id: str
    request_reason: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    status: ApprovalStatus = ApprovalStatus.PENDING
    reason: Optional[str] = None  # Human-supplied on decision
    created_at: datetime = field(default_factory=datetime.utcnow)
    decided_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.approval_id,
            "jobId": self.job_id,
            "stepNo": self.step_no,
            "stepName": self.step_name,
            "skillId": self.skill_id,
            "requestReason": self.request_reason,
            "inputs": dict(self.inputs),
            "status": self.status.value,
            "reason": self.reason,
            "createdAt": self.created_at.isoformat(),
            "decidedAt": _iso(self.decided_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Approval":
        return cls(
            approval_id=data["id"],
            job_id=data["jobId"],
            step_no=data["stepNo"],
            step_name=data.get("stepName", ""),
            skill_id=data.get("skillId", ""),
            request_reason=data.get("requestReason", ""),
            inputs=dict(data.get("inputs") or {}),
            status=ApprovalStatus(data["status"]),
            reason=data.get("reason"),
            created_at=datetime.fromisoformat(data["createdAt"]),
            decided_at=_parse_dt(data.get("decidedAt")),
        )


# -----------------------------------------------------------------------------
# Artifact (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Artifact:
    """Immutable reference to output produced by a completed JobStep."""
    artifact_id: str
    job_id: str
    step_no: int
    name: str
    type: str
    url: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.artifact_id,
            "jobId": self.job_id,
            "stepId": f"{self.job_id}-{self.step_no}",
            "stepNo": self.step_no,
            "name": self.name,
            "type": self.type,
            "url": self.url,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Artifact":
        return cls(
            artifact_id=data["id"],
            job_id=data["jobId"],
            step_no=data["stepNo"],
            name=data["name"],
            type=data["type"],
            url=data["url"],
            created_at=data["createdAt"],
        )


# -----------------------------------------------------------------------------
# Input Bindings
# -----------------------------------------------------------------------------
BINDING_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def resolve_bindings(value: Any, context: Dict[str, Any]) -> Any:
    """
    Replace {{key}} placeholders with values from context.

    A string that is exactly one placeholder takes the bound value as-is
    (so lists and objects pass through); placeholders inside longer strings
    are substituted as text. Unknown keys are left untouched.
    """
    if isinstance(value, str):
        whole = BINDING_PATTERN.fullmatch(value.strip())
        if whole and whole.group(1) in context:
            return context[whole.group(1)]

        def _substitute(match: "re.Match") -> str:
            key = match.group(1)
            if key in context:
                return str(context[key])
            return match.group(0)

        return BINDING_PATTERN.sub(_substitute, value)
    if isinstance(value, dict):
        return {k: resolve_bindings(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_bindings(v, context) for v in value]
    return value
