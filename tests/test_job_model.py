"""
Unit Tests for the Job Data Model

Test coverage for:
- JobStep transition table
- Derived job status
- Plan parsing and validation
- Wire format (camelCase) and snapshot reload
- Input binding resolution
"""

from datetime import datetime

import pytest

from operator_controller.errors import ValidationError
from operator_controller.job_model import (
    StepStatus,
    JobStatus,
    ApprovalStatus,
    FailurePolicy,
    SkillPolicy,
    Skill,
    Plan,
    Job,
    JobStep,
    Approval,
    Artifact,
    can_transition,
    derive_job_status,
    generate_id,
    resolve_bindings,
)


def make_steps(*step_statuses):
    return [
        JobStep(step_no=i, name=f"Step {i}", skill_id="fetch_data", critical=False, status=status)
        for i, status in enumerate(step_statuses, start=1)
    ]


# -----------------------------------------------------------------------------
# Transitions
# -----------------------------------------------------------------------------
class TestStepTransitions:
    """Test the JobStep state machine."""

    @pytest.mark.parametrize("current,target", [
        (StepStatus.PENDING, StepStatus.RUNNING),
        (StepStatus.PENDING, StepStatus.NEEDS_APPROVAL),
        (StepStatus.NEEDS_APPROVAL, StepStatus.RUNNING),
        (StepStatus.NEEDS_APPROVAL, StepStatus.FAILED),
        (StepStatus.RUNNING, StepStatus.COMPLETED),
        (StepStatus.RUNNING, StepStatus.FAILED),
        (StepStatus.FAILED, StepStatus.RUNNING),
        (StepStatus.FAILED, StepStatus.NEEDS_APPROVAL),
    ])
    def test_valid_transitions(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (StepStatus.COMPLETED, StepStatus.RUNNING),
        (StepStatus.COMPLETED, StepStatus.FAILED),
        (StepStatus.PENDING, StepStatus.COMPLETED),
        (StepStatus.NEEDS_APPROVAL, StepStatus.COMPLETED),
        (StepStatus.FAILED, StepStatus.COMPLETED),
        (StepStatus.RUNNING, StepStatus.NEEDS_APPROVAL),
    ])
    def test_invalid_transitions(self, current, target):
        assert not can_transition(current, target)

    def test_completed_is_final(self):
        assert not any(can_transition(StepStatus.COMPLETED, s) for s in StepStatus)


# -----------------------------------------------------------------------------
# Derived Job Status
# -----------------------------------------------------------------------------
class TestDeriveJobStatus:
    """Test job status derivation from step statuses."""

    def test_all_pending(self):
        assert derive_job_status(make_steps(StepStatus.PENDING, StepStatus.PENDING)) == JobStatus.PENDING

    def test_all_completed(self):
        assert derive_job_status(make_steps(StepStatus.COMPLETED, StepStatus.COMPLETED)) == JobStatus.COMPLETED

    def test_step_running(self):
        steps = make_steps(StepStatus.COMPLETED, StepStatus.RUNNING, StepStatus.PENDING)
        assert derive_job_status(steps) == JobStatus.RUNNING

    def test_awaiting_approval_counts_as_running(self):
        steps = make_steps(StepStatus.COMPLETED, StepStatus.NEEDS_APPROVAL)
        assert derive_job_status(steps) == JobStatus.RUNNING

    def test_halted_after_failure(self):
        steps = make_steps(StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.PENDING)
        assert derive_job_status(steps) == JobStatus.FAILED

    def test_continuing_past_failure(self):
        steps = make_steps(StepStatus.FAILED, StepStatus.RUNNING, StepStatus.PENDING)
        assert derive_job_status(steps) == JobStatus.RUNNING

    def test_finished_with_failure(self):
        steps = make_steps(StepStatus.FAILED, StepStatus.COMPLETED)
        assert derive_job_status(steps) == JobStatus.FAILED

    def test_retrying_earlier_step(self):
        steps = make_steps(StepStatus.RUNNING, StepStatus.COMPLETED)
        assert derive_job_status(steps) == JobStatus.RUNNING


# -----------------------------------------------------------------------------
# Plans
# -----------------------------------------------------------------------------
class TestPlanParsing:
    """Test Plan.from_dict validation."""

    def test_parses_console_plan(self):
        plan = Plan.from_dict({
            "id": "plan-1",
            "goal": "Send the daily report",
            "steps": [
                {"tool": "run_analysis", "name": "Analyse", "outputs": ["report_data"]},
                {"skillId": "send_email", "inputs": {"to": "team@company.com"}, "critical": True},
            ],
            "failurePolicy": "continue",
        })
        assert plan.plan_id == "plan-1"
        assert [s.skill_id for s in plan.steps] == ["run_analysis", "send_email"]
        assert plan.steps[0].outputs == ("report_data",)
        assert plan.steps[1].name == "send_email"
        assert plan.steps[1].critical is True
        assert plan.failure_policy == FailurePolicy.CONTINUE

    def test_generates_id_when_missing(self):
        plan = Plan.from_dict({"steps": [{"skillId": "fetch_data"}]})
        assert plan.plan_id.startswith("plan-")

    def test_missing_steps(self):
        with pytest.raises(ValidationError):
            Plan.from_dict({"goal": "nothing"})

    def test_step_without_skill(self):
        with pytest.raises(ValidationError):
            Plan.from_dict({"steps": [{"name": "orphan"}]})

    def test_invalid_failure_policy(self):
        with pytest.raises(ValidationError):
            Plan.from_dict({"steps": [{"skillId": "fetch_data"}], "failurePolicy": "retry"})

    def test_plan_is_immutable(self):
        plan = Plan.from_dict({"steps": [{"skillId": "fetch_data"}]})
        with pytest.raises(AttributeError):
            plan.goal = "changed"

    def test_round_trip_keeps_steps(self):
        plan = Plan.from_dict({"id": "plan-2", "steps": [{"skillId": "fetch_data", "inputs": {"a": 1}}]})
        assert Plan.from_dict(plan.to_dict()) == plan


# -----------------------------------------------------------------------------
# Wire Format
# -----------------------------------------------------------------------------
class TestWireFormat:
    """Test camelCase serialization used by the console and the snapshot."""

    def test_job_to_dict(self):
        job = Job(job_id="job-1", plan_id="plan-1", steps=make_steps(StepStatus.COMPLETED, StepStatus.PENDING))
        data = job.to_dict()

        assert data["id"] == "job-1"
        assert data["planId"] == "plan-1"
        assert data["status"] == "running"
        assert data["steps"][0]["id"] == "job-1-1"
        assert data["steps"][0]["stepNo"] == 1
        assert data["steps"][0]["logs"] is None

    def test_job_reload(self):
        job = Job(
            job_id="job-1",
            plan_id="plan-1",
            steps=make_steps(StepStatus.FAILED),
            failure_policy=FailurePolicy.CONTINUE,
        )
        job.steps[0].log = "boom"
        job.steps[0].started_at = datetime(2026, 1, 18, 9, 30)

        restored = Job.from_dict(job.to_dict())
        assert restored.to_dict() == job.to_dict()

    def test_approval_reload(self):
        approval = Approval(
            approval_id="apr-1",
            job_id="job-1",
            step_no=2,
            step_name="Email the team",
            skill_id="send_email",
            request_reason="critical",
            status=ApprovalStatus.DENIED,
            reason="wrong recipients",
        )
        data = approval.to_dict()
        assert data["jobId"] == "job-1"
        assert data["stepNo"] == 2
        assert Approval.from_dict(data).to_dict() == data

    def test_artifact_step_reference(self):
        artifact = Artifact("art-1", "job-1", 3, "report.pdf", "application/pdf", "https://x/r.pdf", "2026-01-18T09:30:00")
        assert artifact.to_dict()["stepId"] == "job-1-3"

    def test_skill_from_dict(self):
        skill = Skill.from_dict({"id": "post_slack", "policy": "approve"})
        assert skill.name == "post_slack"
        assert skill.policy == SkillPolicy.APPROVE
        with pytest.raises(ValidationError):
            Skill.from_dict({"id": "post_slack", "policy": "sometimes"})

    def test_generate_id_is_unique(self):
        ids = {generate_id("job") for _ in range(100)}
        assert len(ids) == 100


# -----------------------------------------------------------------------------
# Bindings
# -----------------------------------------------------------------------------
class TestResolveBindings:
    """Test {{key}} placeholder substitution."""

    def test_whole_placeholder_keeps_value_type(self):
        assert resolve_bindings("{{rows}}", {"rows": [1, 2]}) == [1, 2]

    def test_embedded_placeholder_is_text(self):
        assert resolve_bindings("Report {{date}}", {"date": "2026-01-18"}) == "Report 2026-01-18"

    def test_unknown_key_left_intact(self):
        assert resolve_bindings("{{missing}} and {{date}}", {"date": "today"}) == "{{missing}} and today"

    def test_nested_structures(self):
        value = {"to": ["{{owner}}"], "meta": {"job": "{{job_id}}"}, "count": 3}
        context = {"owner": "ops@company.com", "job_id": "job-1"}
        assert resolve_bindings(value, context) == {
            "to": ["ops@company.com"],
            "meta": {"job": "job-1"},
            "count": 3,
        }
