"""contentflow server: FastAPI application wiring the orchestrator together.

Startup sequence:
1. Load contentflow.yaml (defaults when absent)
2. Open the execution store (memory or SQLite)
3. Resolve collaborators and validator plugins
4. Register quality gates and workflows (built-in templates first)
5. Mount the workflow API

Shutdown:
1. Cancel running executions
2. Close the HTTP client and the store
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI

from contentflow import __version__
from contentflow.api import configure as configure_api
from contentflow.api import router as api_router
from contentflow.config import DEFAULT_CONFIG_FILE, ContentflowConfig, load_config
from contentflow.workflow.collaborators import load_object
from contentflow.workflow.orchestrator import WorkflowOrchestrator
from contentflow.workflow.quality import CriterionValidatorRegistry
from contentflow.workflow.store import (
    ExecutionStore,
    InMemoryExecutionStore,
    SqliteExecutionStore,
)
from contentflow.workflow.templates import register_builtin_templates

logger = logging.getLogger(__name__)


class ContentflowServer:
    """Encapsulates the orchestrator and its resources for one process."""

    def __init__(self, config_path: Path | None = None, config: ContentflowConfig | None = None):
        self.config_path = config_path or Path(DEFAULT_CONFIG_FILE)
        self.config = config
        self.store: ExecutionStore | None = None
        self.http_client: httpx.AsyncClient | None = None
        self.orchestrator: WorkflowOrchestrator | None = None

    async def start(self) -> None:
        if self.config is None:
            try:
                self.config = load_config(self.config_path)
            except FileNotFoundError:
                logger.warning("No config at %s, using defaults", self.config_path)
                self.config = ContentflowConfig()
        config = self.config

        self.store = await _open_store(config)
        self.http_client = httpx.AsyncClient()

        validators = CriterionValidatorRegistry()
        for module_path in config.validator_plugins:
            validators.load_plugin(module_path)

        refs = config.collaborators
        self.orchestrator = WorkflowOrchestrator(
            store=self.store,
            generator=load_object(refs.generator) if refs.generator else None,
            reviewer=load_object(refs.reviewer) if refs.reviewer else None,
            cache=load_object(refs.cache) if refs.cache else None,
            deployment_target=load_object(refs.deployment_target) if refs.deployment_target else None,
            metrics_sink=load_object(refs.metrics_sink) if refs.metrics_sink else None,
            notification_gateways=[load_object(ref) for ref in refs.notification_gateways],
            validators=validators,
            http_client=self.http_client,
        )

        for gate in config.quality_gates:
            self.orchestrator.register_quality_gate(gate)
        if config.load_builtin_templates:
            register_builtin_templates(self.orchestrator)
        for definition in config.build_workflows():
            self.orchestrator.register_workflow(definition)

        configure_api(self.orchestrator)
        logger.info(
            "contentflow server started: %d workflow(s), storage=%s",
            len(self.orchestrator.list_workflows()),
            config.storage.backend,
        )

    async def stop(self) -> None:
        logger.info("contentflow server shutting down")
        configure_api(None)
        if self.orchestrator:
            await self.orchestrator.shutdown()
        if self.http_client:
            await self.http_client.aclose()
        if isinstance(self.store, SqliteExecutionStore):
            await self.store.close()
        logger.info("contentflow server stopped")


async def _open_store(config: ContentflowConfig) -> ExecutionStore:
    if config.storage.backend == "sqlite":
        db_path = Path(config.storage.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        store = SqliteExecutionStore(str(db_path))
        await store.initialize()
        return store
    return InMemoryExecutionStore()


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(config_path: Path | None = None, config: ContentflowConfig | None = None) -> FastAPI:
    """Create the FastAPI application."""
    server = ContentflowServer(config_path, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="contentflow",
        version=__version__,
        description="Workflow orchestration for AI-assisted content production",
        lifespan=lifespan,
    )
    app.state.server = server
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check with execution counts."""
        orchestrator = server.orchestrator
        if orchestrator is None:
            return {"status": "starting"}
        history = await orchestrator.store.all()
        counts: dict[str, int] = {}
        for execution in history:
            counts[execution.status.value] = counts.get(execution.status.value, 0) + 1
        return {
            "status": "ok",
            "version": __version__,
            "workflows": len(orchestrator.list_workflows()),
            "executions": counts,
            "storage": server.config.storage.backend if server.config else None,
        }

    return app
