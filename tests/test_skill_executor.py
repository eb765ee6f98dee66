"""
Unit Tests for Skill Executors

Test coverage for:
- Result payload parsing
- In-process handlers (sync, async, missing, fallback)
- Webhook execution over httpx (success, HTTP errors, network errors, bad JSON)
"""

import json

import httpx
import pytest

from operator_controller.errors import ExecutionError
from operator_controller.skill_executor import (
    ArtifactRef,
    HandlerSkillExecutor,
    SkillResult,
    StepContext,
    WebhookSkillExecutor,
)

CONTEXT = StepContext(job_id="job-1", step_no=2, attempt=1)


def webhook_executor(skills, handler):
    client = httpx.AsyncClient(base_url="http://hooks.test", transport=httpx.MockTransport(handler))
    return WebhookSkillExecutor("http://hooks.test", skills, client=client)


class TestSkillResult:
    """Test normalisation of skill return values."""

    def test_from_mapping(self):
        result = SkillResult.from_payload({
            "outputs": {"task_id": "T-1"},
            "artifacts": [{"name": "notes.md", "url": "https://x/notes.md"}],
        })
        assert result.outputs == {"task_id": "T-1"}
        assert result.artifacts == [ArtifactRef("notes.md", "application/octet-stream", "https://x/notes.md")]

    def test_from_none(self):
        assert SkillResult.from_payload(None) == SkillResult()

    def test_rejects_other_types(self):
        with pytest.raises(ValueError):
            SkillResult.from_payload(["not", "a", "mapping"])


class TestHandlerSkillExecutor:
    """Test in-process handlers."""

    @pytest.mark.asyncio
    async def test_sync_handler(self):
        executor = HandlerSkillExecutor({"create_task": lambda inputs, ctx: {"outputs": {"title": inputs["title"]}}})
        result = await executor.execute("create_task", {"title": "Verify backup"}, CONTEXT)
        assert result.outputs == {"title": "Verify backup"}

    @pytest.mark.asyncio
    async def test_async_handler_receives_context(self):
        seen = []

        async def handler(inputs, ctx):
            seen.append(ctx)
            return SkillResult(outputs={"ok": True})

        executor = HandlerSkillExecutor()
        executor.register("backup_data", handler)
        result = await executor.execute("backup_data", {}, CONTEXT)

        assert result.outputs == {"ok": True}
        assert seen == [CONTEXT]

    @pytest.mark.asyncio
    async def test_missing_handler(self):
        with pytest.raises(ExecutionError) as exc_info:
            await HandlerSkillExecutor().execute("send_email", {}, CONTEXT)
        assert exc_info.value.skill_id == "send_email"

    @pytest.mark.asyncio
    async def test_fallback_executor(self):
        fallback = HandlerSkillExecutor({"send_email": lambda inputs, ctx: None})
        executor = HandlerSkillExecutor(fallback=fallback)
        assert await executor.execute("send_email", {}, CONTEXT) == SkillResult()


class TestWebhookSkillExecutor:
    """Test webhook execution through a mocked transport."""

    @pytest.mark.asyncio
    async def test_posts_step_and_parses_result(self, skills):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                "outputs": {"email_sent": True},
                "artifacts": [{"name": "receipt", "type": "text/plain", "url": "https://x/receipt"}],
            })

        executor = webhook_executor(skills, handler)
        result = await executor.execute("send_email", {"to": "team@company.com"}, CONTEXT)
        await executor.close()

        assert result.outputs == {"email_sent": True}
        assert result.artifacts[0].name == "receipt"
        assert requests[0].url.path == "/send_email"
        assert json.loads(requests[0].content) == {
            "jobId": "job-1",
            "stepNo": 2,
            "attempt": 1,
            "skillId": "send_email",
            "inputs": {"to": "team@company.com"},
        }

    @pytest.mark.asyncio
    async def test_http_error(self, skills):
        executor = webhook_executor(skills, lambda request: httpx.Response(500, text="down"))
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute("send_email", {}, CONTEXT)
        assert "HTTP 500" in exc_info.value.message
        assert isinstance(exc_info.value.cause, httpx.HTTPStatusError)

    @pytest.mark.asyncio
    async def test_network_error(self, skills):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        executor = webhook_executor(skills, handler)
        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute("send_email", {}, CONTEXT)
        assert "unreachable" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_invalid_json(self, skills):
        executor = webhook_executor(skills, lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(ExecutionError):
            await executor.execute("send_email", {}, CONTEXT)

    @pytest.mark.asyncio
    async def test_empty_body_is_success(self, skills):
        executor = webhook_executor(skills, lambda request: httpx.Response(204))
        assert await executor.execute("send_email", {}, CONTEXT) == SkillResult()

    @pytest.mark.asyncio
    async def test_skill_without_webhook(self, skills):
        executor = webhook_executor(skills, lambda request: httpx.Response(200, json={}))
        with pytest.raises(ExecutionError):
            await executor.execute("fetch_data", {}, CONTEXT)
