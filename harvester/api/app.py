"""Operations API: health, metrics, execution inspection and manual runs."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, status
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from harvester.api.deps import get_database, get_source_scheduler, require_admin_api_key
from harvester.config import settings
from harvester.db.models import Execution, ExecutionLog
from harvester.errors import SourceNotFoundError
from harvester.worker.runner import Pipeline
from harvester.worker.scheduler import SourceScheduler

logger = logging.getLogger(__name__)


class ExecutionLogOut(BaseModel):
    level: str
    event: str
    message: str
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime


class ExecutionOut(BaseModel):
    id: int
    source_id: int
    status: str
    items_found: int
    items_upserted: int
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    logs: list[ExecutionLogOut] = []


class RunResponse(BaseModel):
    source_id: int
    execution_id: Optional[int] = None
    queued: bool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting harvester API...")
    pipeline = Pipeline()
    app.state.source_scheduler = pipeline.source_scheduler
    if settings.run_workers_in_api:
        await pipeline.start()

    yield

    logger.info("Shutting down...")
    await pipeline.stop()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Harvester",
        description="Price harvesting pipeline operations API",
        version="0.1.0",
        lifespan=lifespan,
    )

    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/metrics", "/health"],
    )
    instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/executions/{execution_id}", response_model=ExecutionOut)
    async def get_execution(execution_id: int, db: AsyncSession = Depends(get_database)):
        execution = await db.get(Execution, execution_id)
        if execution is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Execution not found")
        logs = (
            await db.scalars(
                select(ExecutionLog)
                .where(ExecutionLog.execution_id == execution_id)
                .order_by(ExecutionLog.id)
            )
        ).all()
        return ExecutionOut(
            id=execution.id,
            source_id=execution.source_id,
            status=execution.status,
            items_found=execution.items_found,
            items_upserted=execution.items_upserted,
            error_message=execution.error_message,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            duration_ms=execution.duration_ms,
            logs=[
                ExecutionLogOut(
                    level=log.level,
                    event=log.event,
                    message=log.message,
                    metadata=log.details,
                    created_at=log.created_at,
                )
                for log in logs
            ],
        )

    @app.post(
        "/sources/{source_id}/run",
        response_model=RunResponse,
        status_code=status.HTTP_202_ACCEPTED,
        dependencies=[Depends(require_admin_api_key)],
    )
    async def run_source(source_id: int, scheduler: SourceScheduler = Depends(get_source_scheduler)):
        """Manually trigger a harvest of one source."""
        try:
            execution_id = await scheduler.trigger_source(source_id)
        except SourceNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Source not found")
        return RunResponse(source_id=source_id, execution_id=execution_id, queued=execution_id is not None)

    return app


app = create_app()
