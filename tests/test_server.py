# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for the REST API server"""

import pytest
from httpx import ASGITransport, AsyncClient

from loyaltyflow.server.app import create_app, status_code_for
from loyaltyflow.core.exceptions import (
    ConcurrencyConflict,
    DefinitionError,
    ExecutionNotFoundError,
    HandlerError,
    NestedExecutionError,
)

from flows import counter_flow, quiz_flow


@pytest.fixture
def app(engine):
    return create_app(engine)


def client_for(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def test_status_mapping():
    assert status_code_for(ExecutionNotFoundError("x")) == 404
    assert status_code_for(ConcurrencyConflict("busy")) == 409
    assert status_code_for(NestedExecutionError("c", "p")) == 409
    assert status_code_for(DefinitionError("bad")) == 422
    assert status_code_for(HandlerError("boom")) == 500


class TestWorkflowRoutes:
    """Publishing and versions"""

    @pytest.mark.asyncio
    async def test_health(self, app):
        async with client_for(app) as client:
            response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_publish_and_list_versions(self, app):
        async with client_for(app) as client:
            first = await client.post("/api/workflows", json=quiz_flow())
            second = await client.post("/api/workflows", params={"activate": "false"}, json=quiz_flow())
            versions = await client.get("/api/workflows/quiz/versions")
            workflows = await client.get("/api/workflows")

        assert first.status_code == 201
        assert first.json()["version"] == 1
        assert first.json()["is_active"] is True
        assert second.json()["version"] == 2
        assert second.json()["is_active"] is False
        assert [v["version"] for v in versions.json()["versions"]] == [1, 2]
        assert workflows.json() == {"workflows": ["quiz"]}

    @pytest.mark.asyncio
    async def test_activate_version(self, app):
        async with client_for(app) as client:
            await client.post("/api/workflows", json=quiz_flow())
            await client.post("/api/workflows", params={"activate": "false"}, json=quiz_flow())
            response = await client.post("/api/workflows/quiz/versions/2/activate")
        assert response.status_code == 200
        assert response.json()["is_active"] is True

    @pytest.mark.asyncio
    async def test_invalid_definition(self, app):
        definition = quiz_flow()
        definition["entry_node_id"] = "missing"
        async with client_for(app) as client:
            response = await client.post("/api/workflows", json=definition)

        assert response.status_code == 422
        assert response.json()["error"]["type"] == "DefinitionError"


class TestExecutionRoutes:
    """Starting, resuming and inspecting"""

    @pytest.mark.asyncio
    async def test_start_resume_inspect(self, app, engine):
        engine.publish(quiz_flow())
        async with client_for(app) as client:
            started = await client.post(
                "/api/workflows/quiz/executions", json={"session_id": "tg:1", "chat_id": "42"}
            )
            execution_id = started.json()["execution_id"]
            resumed = await client.post(
                f"/api/executions/{execution_id}/resume", json={"variables": {"step": 3}}
            )
            detail = await client.get(f"/api/executions/{execution_id}")
            again = await client.post(f"/api/executions/{execution_id}/resume", json={"text": "late"})

        assert started.status_code == 201
        assert started.json()["status"] == "waiting"
        assert resumed.json() == {"execution_id": execution_id, "status": "completed"}
        assert detail.json()["status"] == "completed"
        assert [s["node_id"] for s in detail.json()["steps"]] == ["M", "C", "W", "C", "T"]
        assert again.status_code == 409
        assert again.json()["error"]["type"] == "ConcurrencyConflict"

    @pytest.mark.asyncio
    async def test_unknown_execution(self, app):
        async with client_for(app) as client:
            response = await client.get("/api/executions/missing")
        assert response.status_code == 404
        assert response.json()["error"]["type"] == "ExecutionNotFoundError"

    @pytest.mark.asyncio
    async def test_start_unknown_workflow(self, app):
        async with client_for(app) as client:
            response = await client.post("/api/workflows/ghost/executions", json={"session_id": "tg:1"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_executions(self, app, engine):
        engine.publish(counter_flow())
        for i in range(3):
            await engine.start("counter", session_id=f"tg:{i}")

        async with client_for(app) as client:
            response = await client.get("/api/executions", params={"limit": 2, "page": 2})

        body = response.json()
        assert body["pagination"] == {"page": 2, "limit": 2, "total": 3, "total_pages": 2}
        assert len(body["executions"]) == 1

    @pytest.mark.asyncio
    async def test_cancel(self, app, engine):
        engine.publish(quiz_flow())
        execution_id = await engine.start("quiz", session_id="tg:1")

        async with client_for(app) as client:
            response = await client.post(f"/api/executions/{execution_id}/cancel")
        assert response.json() == {"execution_id": execution_id, "cancelled": True}

    @pytest.mark.asyncio
    async def test_restart(self, app, engine):
        engine.publish(counter_flow())
        execution_id = await engine.start("counter", session_id="tg:1")

        async with client_for(app) as client:
            response = await client.post(
                f"/api/executions/{execution_id}/restart", json={"reset_variables": True}
            )
        await engine.join()

        assert response.status_code == 202
        body = response.json()
        assert body["parent_execution_id"] == execution_id
        assert engine.get_execution(body["new_execution_id"])["status"] == "completed"
        await engine.close()
