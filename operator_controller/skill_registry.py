"""
Skill Registry

Catalog of skills and their autonomy policies. Decides whether a plan step
is critical (gated behind approval) at dispatch time:

    policy APPROVE / ASSIST  -> always gated
    policy AUTO_SAFE         -> never gated
    no policy                -> skill.critical_by_default OR step.critical
"""

import logging
from typing import Optional, Dict, Any, List, Iterable

from .errors import NotFoundError, ValidationError
from .job_model import Skill, SkillPolicy, PlanStep

logger = logging.getLogger("skill_registry")

GATED_POLICIES = {SkillPolicy.APPROVE, SkillPolicy.ASSIST}


class SkillRegistry:
    """In-memory skill catalog. Insertion order is the listing order."""

    def __init__(self, skills: Optional[Iterable[Skill]] = None):
        self._skills: Dict[str, Skill] = {}
        for skill in skills or []:
            self.register(skill)

    @classmethod
    def from_catalog(cls, entries: List[Dict[str, Any]]) -> "SkillRegistry":
        """Build a registry from catalog entries (see config/catalog.yaml)."""
        return cls(Skill.from_dict(entry) for entry in entries)

    def register(self, skill: Skill) -> None:
        if skill.skill_id in self._skills:
            logger.info(f"Replacing skill definition: {skill.skill_id}")
        self._skills[skill.skill_id] = skill

    def get(self, skill_id: str) -> Skill:
        skill = self._skills.get(skill_id)
        if skill is None:
            raise NotFoundError(f"Skill '{skill_id}' not found")
        return skill

    def has(self, skill_id: str) -> bool:
        return skill_id in self._skills

    def list_skills(self) -> List[Skill]:
        return list(self._skills.values())

    def update_policy(self, skill_id: str, policy: str) -> Skill:
        """
        Set a skill's autonomy policy.

        Only jobs dispatched afterwards are affected; criticality of existing
        job steps was fixed at their dispatch.
        """
        skill = self.get(skill_id)
        try:
            new_policy = SkillPolicy(policy)
        except ValueError:
            valid = [p.value for p in SkillPolicy]
            raise ValidationError(f"Invalid policy '{policy}'. Must be one of: {valid}")

        old_policy = skill.policy
        skill.policy = new_policy
        logger.info(
            f"Skill policy updated: {skill_id}: "
            f"{old_policy.value if old_policy else 'unset'} -> {new_policy.value}"
        )
        return skill

    def is_critical(self, step: PlanStep) -> bool:
        """Resolve whether a plan step must be gated behind approval."""
        skill = self.get(step.skill_id)
        if skill.policy in GATED_POLICIES:
            return True
        if skill.policy == SkillPolicy.AUTO_SAFE:
            return False
        return skill.critical_by_default or step.critical

    def gate_reason(self, step: PlanStep) -> str:
        """Human-readable reason shown on the approval request."""
        skill = self.get(step.skill_id)
        if skill.policy == SkillPolicy.ASSIST:
            return f"Skill '{skill.name}' is assist-only and cannot act without approval"
        if skill.policy == SkillPolicy.APPROVE:
            return f"Skill '{skill.name}' requires approval for every action"
        if skill.critical_by_default:
            return f"Skill '{skill.name}' is critical by default"
        return f"Step '{step.name}' is marked critical in the plan"
