# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
LoyaltyFlow REST API Server

HTTP surface over the workflow engine: publishing, starting, resuming,
restarting and inspecting executions. Run with ``loyaltyflow serve`` or
``uvicorn loyaltyflow.server.app:app``.
"""

from typing import Any, Dict, Optional, Union

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from loyaltyflow import __version__
from loyaltyflow.core.engine import WorkflowEngine
from loyaltyflow.core.exceptions import (
    ConcurrencyConflict,
    ConfigError,
    DefinitionError,
    ExecutionNotFoundError,
    FlowError,
    NestedExecutionError,
)
from loyaltyflow.core.models import ResumeEvent, WorkflowVersion


class StartRequest(BaseModel):
    session_id: str
    version: Union[int, str] = "active"
    initial_variables: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    chat_id: Optional[str] = None


class RestartRequest(BaseModel):
    from_node_id: Optional[str] = None
    reset_variables: bool = False
    skip_completed: bool = False
    session_id: Optional[str] = None


def version_summary(version: WorkflowVersion) -> Dict[str, Any]:
    return {
        "workflow_id": version.workflow_id,
        "version": version.version,
        "name": version.name,
        "is_active": version.is_active,
        "entry_node_id": version.entry_node_id,
        "node_count": len(version.nodes),
        "created_at": version.created_at.isoformat() if version.created_at else None,
    }


def status_code_for(error: FlowError) -> int:
    if isinstance(error, ExecutionNotFoundError):
        return 404
    if isinstance(error, (ConcurrencyConflict, NestedExecutionError)):
        return 409
    if isinstance(error, (DefinitionError, ConfigError)):
        return 422
    return 500


def create_app(engine: Optional[WorkflowEngine] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        engine: Engine to serve; created from the global config on first use
            when omitted
    """
    app = FastAPI(
        title="LoyaltyFlow API Server",
        description="Workflow execution engine REST API",
        version=__version__,
    )
    app.state.engine = engine

    def get_engine(request: Request) -> WorkflowEngine:
        if request.app.state.engine is None:
            request.app.state.engine = WorkflowEngine()
        return request.app.state.engine

    @app.exception_handler(FlowError)
    async def flow_error_handler(request: Request, exc: FlowError):
        return JSONResponse(status_code=status_code_for(exc), content={"error": exc.to_dict()})

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.engine is not None:
            await app.state.engine.close()

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__}

    # =========================================================================
    # Workflow Definitions
    # =========================================================================

    @app.get("/api/workflows")
    def list_workflows(engine: WorkflowEngine = Depends(get_engine)):
        return {"workflows": engine.definitions.list_workflows()}

    @app.post("/api/workflows", status_code=201)
    def publish_workflow(
        definition: Dict[str, Any] = Body(...),
        activate: bool = True,
        engine: WorkflowEngine = Depends(get_engine),
    ):
        """Publish a definition as the next version of its workflow."""
        return version_summary(engine.publish(definition, activate=activate))

    @app.get("/api/workflows/{workflow_id}/versions")
    def list_versions(workflow_id: str, engine: WorkflowEngine = Depends(get_engine)):
        return {"versions": [version_summary(v) for v in engine.list_versions(workflow_id)]}

    @app.post("/api/workflows/{workflow_id}/versions/{version}/activate")
    def activate_version(workflow_id: str, version: int, engine: WorkflowEngine = Depends(get_engine)):
        return version_summary(engine.activate_version(workflow_id, version))

    # =========================================================================
    # Executions
    # =========================================================================

    @app.post("/api/workflows/{workflow_id}/executions", status_code=201)
    async def start_execution(
        workflow_id: str,
        request: StartRequest,
        engine: WorkflowEngine = Depends(get_engine),
    ):
        """Start a workflow for a session and run it until it suspends or ends."""
        execution_id = await engine.start(
            workflow_id,
            session_id=request.session_id,
            version=request.version,
            initial_variables=request.initial_variables,
            user_id=request.user_id,
            chat_id=request.chat_id,
        )
        execution = engine.context_manager.get_execution(execution_id)
        return {"execution_id": execution_id, "status": execution.status.value}

    @app.get("/api/executions")
    def list_executions(
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
        include_nested: bool = False,
        engine: WorkflowEngine = Depends(get_engine),
    ):
        return engine.list_executions(
            workflow_id=workflow_id,
            status=status,
            user_id=user_id,
            date_from=date_from,
            date_to=date_to,
            search=search,
            page=page,
            limit=limit,
            include_nested=include_nested,
        )

    @app.get("/api/executions/{execution_id}")
    def get_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)):
        return engine.get_execution(execution_id)

    @app.post("/api/executions/{execution_id}/resume")
    async def resume_execution(
        execution_id: str,
        event: ResumeEvent,
        engine: WorkflowEngine = Depends(get_engine),
    ):
        status = await engine.resume(execution_id, event)
        return {"execution_id": execution_id, "status": status.value}

    @app.post("/api/executions/{execution_id}/restart", status_code=202)
    async def restart_execution(
        execution_id: str,
        request: RestartRequest,
        engine: WorkflowEngine = Depends(get_engine),
    ):
        return await engine.restart(
            execution_id,
            from_node_id=request.from_node_id,
            reset_variables=request.reset_variables,
            skip_completed=request.skip_completed,
            session_id=request.session_id,
        )

    @app.post("/api/executions/{execution_id}/cancel")
    def cancel_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)):
        return {"execution_id": execution_id, "cancelled": engine.cancel(execution_id)}

    @app.post("/api/delays/tick")
    async def resume_due_delays(engine: WorkflowEngine = Depends(get_engine)):
        """Timer trigger: resume executions whose delay has elapsed."""
        return {"resumed": await engine.resume_due_delays()}

    return app


app = create_app()
