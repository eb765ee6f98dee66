"""
Skill Executor

Performs the side-effecting work of one step (send an email, call an API,
generate a document). The orchestrator treats every executor as an opaque
async call with unbounded latency:

    execute(skill_id, inputs, context) -> SkillResult | raises

Two implementations:
- HandlerSkillExecutor: in-process handlers keyed by skill id
- WebhookSkillExecutor: POSTs the step to an automation webhook via httpx

Executors never touch job state; failures are raised and recorded by the
orchestrator at the step boundary.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable

import httpx

from .errors import ExecutionError
from .skill_registry import SkillRegistry

logger = logging.getLogger("skill_executor")


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ArtifactRef:
    """Artifact reported by a skill, before the controller assigns it an id."""
    name: str
    type: str
    url: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactRef":
        return cls(
            name=data["name"],
            type=data.get("type", "application/octet-stream"),
            url=data.get("url", ""),
        )


@dataclass
class SkillResult:
    """Outputs and artifacts of one successful skill invocation."""
    outputs: Dict[str, Any] = field(default_factory=dict)
    artifacts: List[ArtifactRef] = field(default_factory=list)
    log: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "SkillResult":
        """Accept a SkillResult, a {"outputs", "artifacts", "log"} mapping or None."""
        if isinstance(payload, SkillResult):
            return payload
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValueError(f"Skill returned unsupported result type: {type(payload).__name__}")
        artifacts = [
            a if isinstance(a, ArtifactRef) else ArtifactRef.from_dict(a)
            for a in payload.get("artifacts") or []
        ]
        return cls(
            outputs=dict(payload.get("outputs") or {}),
            artifacts=artifacts,
            log=payload.get("log"),
        )


@dataclass(frozen=True)
class StepContext:
    """Identifies the step being executed."""
    job_id: str
    step_no: int
    attempt: int


# -----------------------------------------------------------------------------
# Executor Interface
# -----------------------------------------------------------------------------
class SkillExecutor(ABC):
    """Opaque collaborator performing one step's work."""

    @abstractmethod
    async def execute(self, skill_id: str, inputs: Dict[str, Any], context: StepContext) -> SkillResult:
        """Run the skill. Raise on failure."""

    async def close(self) -> None:
        """Release resources held by the executor."""


SkillHandler = Callable[[Dict[str, Any], StepContext], Any]


class HandlerSkillExecutor(SkillExecutor):
    """
    Dispatches to in-process handlers keyed by skill id.

    A handler may be sync or async and returns a SkillResult, a mapping with
    "outputs"/"artifacts", or None. Skills without a handler go to the
    fallback executor when one is configured.
    """

    def __init__(
        self,
        handlers: Optional[Dict[str, SkillHandler]] = None,
        fallback: Optional[SkillExecutor] = None,
    ):
        self._handlers: Dict[str, SkillHandler] = dict(handlers or {})
        self._fallback = fallback

    def register(self, skill_id: str, handler: SkillHandler) -> None:
        self._handlers[skill_id] = handler

    async def execute(self, skill_id: str, inputs: Dict[str, Any], context: StepContext) -> SkillResult:
        handler = self._handlers.get(skill_id)
        if handler is None:
            if self._fallback is not None:
                return await self._fallback.execute(skill_id, inputs, context)
            raise ExecutionError(skill_id, f"No executor available for skill '{skill_id}'")

        result = handler(inputs, context)
        if inspect.isawaitable(result):
            result = await result
        return SkillResult.from_payload(result)

    async def close(self) -> None:
        if self._fallback is not None:
            await self._fallback.close()


class WebhookSkillExecutor(SkillExecutor):
    """
    Executes skills by POSTing to {base_url}/{webhook}.

    Request body: {"jobId", "stepNo", "attempt", "skillId", "inputs"}
    Response body: {"outputs": {...}, "artifacts": [{"name", "type", "url"}]}
    """

    def __init__(
        self,
        base_url: str,
        skills: SkillRegistry,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._skills = skills
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def execute(self, skill_id: str, inputs: Dict[str, Any], context: StepContext) -> SkillResult:
        skill = self._skills.get(skill_id)
        if not skill.webhook:
            raise ExecutionError(skill_id, f"Skill '{skill_id}' has no webhook configured")

        body = {
            "jobId": context.job_id,
            "stepNo": context.step_no,
            "attempt": context.attempt,
            "skillId": skill_id,
            "inputs": inputs,
        }
        logger.info(f"Calling webhook '{skill.webhook}' for {context.job_id} step {context.step_no}")

        try:
            response = await self._client.post(f"/{skill.webhook}", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExecutionError(
                skill_id,
                f"Webhook '{skill.webhook}' returned HTTP {e.response.status_code}",
                cause=e,
            )
        except httpx.RequestError as e:
            raise ExecutionError(skill_id, f"Webhook '{skill.webhook}' unreachable: {e}", cause=e)

        try:
            payload = response.json() if response.content else None
            return SkillResult.from_payload(payload)
        except (ValueError, KeyError) as e:
            raise ExecutionError(skill_id, f"Webhook '{skill.webhook}' returned an invalid result: {e}", cause=e)

    async def close(self) -> None:
        await self._client.aclose()
