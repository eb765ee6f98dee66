"""
Planner

Turns a free-text goal into a Plan: an ordered list of steps bound to skills.

The orchestrator consumes planners only through the Planner interface, so an
LLM-backed planner can replace WorkflowPlanner without touching dispatch.
WorkflowPlanner is deterministic: it picks the configured workflow template
whose keywords best match the goal.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple

from .errors import ValidationError
from .job_model import Plan, PlanStep, generate_id
from .skill_registry import SkillRegistry

logger = logging.getLogger("planner")

_WORD = re.compile(r"[a-z0-9]+")


class Planner(ABC):
    """Black-box planning collaborator: (goal, constraints) -> Plan | error."""

    @abstractmethod
    async def plan(self, goal: str, constraints: Optional[Dict[str, Any]] = None) -> Plan:
        """Produce a plan for the goal or raise ValidationError."""


@dataclass(frozen=True)
class WorkflowTemplate:
    """A reusable, named sequence of plan steps."""
    workflow_id: str
    name: str
    description: str
    keywords: Tuple[str, ...]
    steps: Tuple[PlanStep, ...]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowTemplate":
        workflow_id = data.get("id")
        if not workflow_id:
            raise ValidationError("Workflow template is missing required field 'id'")
        raw_steps = data.get("steps") or []
        return cls(
            workflow_id=workflow_id,
            name=data.get("name") or workflow_id,
            description=data.get("description", ""),
            keywords=tuple(k.lower() for k in data.get("keywords") or ()),
            steps=tuple(PlanStep.from_dict(s, i) for i, s in enumerate(raw_steps, start=1)),
        )

    def score(self, words: set) -> int:
        """Number of goal words matching this template's keywords or name."""
        vocabulary = set(self.keywords) | set(_WORD.findall(self.name.lower()))
        return len(words & vocabulary)


def format_estimate(total_seconds: int) -> str:
    """Format a duration estimate the way the console displays it."""
    if total_seconds < 60:
        return f"~{total_seconds} sec"
    minutes = (total_seconds + 59) // 60
    return f"~{minutes} min"


class WorkflowPlanner(Planner):
    """
    Keyword-matching planner over workflow templates.

    Supported constraints:
    - workflow: template id to use, bypassing matching
    - max_steps: reject plans longer than this
    - exclude_skills: reject plans using any of these skills
    """

    def __init__(self, templates: List[WorkflowTemplate], skills: SkillRegistry):
        self._templates = list(templates)
        self._skills = skills

    @classmethod
    def from_catalog(cls, entries: List[Dict[str, Any]], skills: SkillRegistry) -> "WorkflowPlanner":
        return cls([WorkflowTemplate.from_dict(entry) for entry in entries], skills)

    @property
    def templates(self) -> List[WorkflowTemplate]:
        return list(self._templates)

    async def plan(self, goal: str, constraints: Optional[Dict[str, Any]] = None) -> Plan:
        if not goal or not goal.strip():
            raise ValidationError("Goal must not be empty")
        constraints = constraints or {}

        template = self._select(goal, constraints)
        self._check_constraints(template, constraints)

        estimate = self._estimate(template.steps)
        plan = Plan(
            plan_id=generate_id("plan"),
            steps=template.steps,
            goal=goal.strip(),
            estimated_time=format_estimate(estimate) if estimate else None,
        )
        logger.info(f"Planned {plan.plan_id} from workflow '{template.workflow_id}' ({len(plan.steps)} steps)")
        return plan

    def _select(self, goal: str, constraints: Dict[str, Any]) -> WorkflowTemplate:
        requested = constraints.get("workflow")
        if requested:
            for template in self._templates:
                if template.workflow_id == requested:
                    return template
            raise ValidationError(f"Unknown workflow '{requested}'")

        words = set(_WORD.findall(goal.lower()))
        best: Optional[WorkflowTemplate] = None
        best_score = 0
        for template in self._templates:
            score = template.score(words)
            if score > best_score:
                best, best_score = template, score

        if best is None:
            raise ValidationError(f"No workflow matches goal: {goal.strip()!r}")
        return best

    def _check_constraints(self, template: WorkflowTemplate, constraints: Dict[str, Any]) -> None:
        max_steps = constraints.get("max_steps")
        if max_steps is not None and len(template.steps) > int(max_steps):
            raise ValidationError(
                f"Workflow '{template.workflow_id}' needs {len(template.steps)} steps, "
                f"exceeding max_steps={max_steps}"
            )

        excluded = set(constraints.get("exclude_skills") or ())
        used = [s.skill_id for s in template.steps if s.skill_id in excluded]
        if used:
            raise ValidationError(f"Workflow '{template.workflow_id}' uses excluded skills: {used}")

    def _estimate(self, steps: Tuple[PlanStep, ...]) -> int:
        total = 0
        for step in steps:
            if self._skills.has(step.skill_id):
                total += self._skills.get(step.skill_id).estimated_seconds or 0
        return total
