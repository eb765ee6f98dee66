"""
Pytest configuration for the Operator Job Controller tests.

This module provides:
1. A recording Skill Executor whose calls can be blocked or made to fail
2. Skill catalog, store and orchestrator fixtures
3. A plan factory
"""

import asyncio
from typing import Optional, Dict, Any, List, Tuple, Callable

import pytest

from operator_controller.job_model import (
    Skill,
    SkillPolicy,
    Plan,
    PlanStep,
    FailurePolicy,
    generate_id,
)
from operator_controller.job_store import JobStore
from operator_controller.orchestrator import JobOrchestrator
from operator_controller.skill_executor import SkillExecutor, SkillResult, StepContext
from operator_controller.skill_registry import SkillRegistry


# -----------------------------------------------------------------------------
# Recording Executor
# -----------------------------------------------------------------------------
class RecordingExecutor(SkillExecutor):
    """
    Test double for the Skill Executor.

    - calls: every invocation as (skill_id, inputs, context)
    - fail(skill_id, error): the next call of that skill raises error
    - respond(skill_id, payload): result payload for that skill
    - block(skill_id): calls wait until release(skill_id)
    - on_call: optional hook invoked at the start of every call
    """

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any], StepContext]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.results: Dict[str, Any] = {}
        self.blockers: Dict[str, asyncio.Event] = {}
        self.on_call: Optional[Callable[[str, StepContext], None]] = None
        self.closed = False

    def fail(self, skill_id: str, error: Exception) -> None:
        self.failures.setdefault(skill_id, []).append(error)

    def respond(self, skill_id: str, payload: Any) -> None:
        self.results[skill_id] = payload

    def block(self, skill_id: str) -> None:
        self.blockers[skill_id] = asyncio.Event()

    def release(self, skill_id: str) -> None:
        self.blockers.pop(skill_id).set()

    def called_skills(self) -> List[str]:
        return [skill_id for skill_id, _, _ in self.calls]

    async def execute(self, skill_id: str, inputs: Dict[str, Any], context: StepContext) -> SkillResult:
        self.calls.append((skill_id, dict(inputs), context))
        if self.on_call is not None:
            self.on_call(skill_id, context)
        blocker = self.blockers.get(skill_id)
        if blocker is not None:
            await blocker.wait()
        errors = self.failures.get(skill_id)
        if errors:
            raise errors.pop(0)
        return SkillResult.from_payload(self.results.get(skill_id))

    async def close(self) -> None:
        self.closed = True


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def skills():
    """Skill catalog covering every gating rule."""
    return SkillRegistry([
        Skill("fetch_data", "Fetch Data", estimated_seconds=20),
        Skill("transform", "Transform", estimated_seconds=40),
        Skill("store_result", "Store Result"),
        Skill("send_email", "Send Email", critical_by_default=True, webhook="send_email"),
        Skill("post_slack", "Post to Slack", policy=SkillPolicy.APPROVE),
        Skill("draft_reply", "Draft Reply", policy=SkillPolicy.ASSIST),
        Skill("run_analysis", "Run Analysis", policy=SkillPolicy.AUTO_SAFE),
    ])


@pytest.fixture
def store():
    """In-memory store (no snapshot, no audit log)."""
    return JobStore()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def orchestrator(store, skills, executor):
    """Orchestrator with the default halt-on-failure policy."""
    return JobOrchestrator(store=store, skills=skills, executor=executor)


@pytest.fixture
def make_plan():
    """
    Factory for plans.

    Usage:
        plan = make_plan("fetch_data", "send_email", critical={2})
    """
    def _make_plan(
        *skill_ids: str,
        critical=(),
        inputs: Optional[Dict[int, Dict[str, Any]]] = None,
        failure_policy: Optional[FailurePolicy] = None,
        plan_id: Optional[str] = None,
    ) -> Plan:
        steps = tuple(
            PlanStep(
                step_id=str(position),
                skill_id=skill_id,
                name=f"Step {position}: {skill_id}",
                inputs=(inputs or {}).get(position, {}),
                critical=position in critical,
            )
            for position, skill_id in enumerate(skill_ids, start=1)
        )
        return Plan(
            plan_id=plan_id or generate_id("plan"),
            steps=steps,
            failure_policy=failure_policy,
        )
    return _make_plan
