"""Execution audit trail and guarded status transitions."""

import logging
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from harvester.db.models import Execution, ExecutionLog, ExecutionStatus, utcnow

logger = logging.getLogger(__name__)

INFO = "INFO"
WARN = "WARN"
ERROR = "ERROR"

_PY_LEVELS = {INFO: logging.INFO, WARN: logging.WARNING, ERROR: logging.ERROR}


async def log_event(
    session: AsyncSession,
    execution_id: int,
    level: str,
    event: str,
    message: str,
    metadata: Optional[dict[str, Any]] = None,
) -> ExecutionLog:
    """
    Append one audit entry for an execution.

    The row is flushed but not committed; it becomes durable together with
    whatever the caller commits next.

    Args:
        session: Active session
        execution_id: Execution the entry belongs to
        level: INFO, WARN or ERROR
        event: Event name (e.g. FETCH_OK)
        message: Human readable message
        metadata: JSON-serializable details

    Returns:
        The pending ExecutionLog row
    """
    entry = ExecutionLog(
        execution_id=execution_id,
        level=level,
        event=event,
        message=message,
        details=metadata,
    )
    session.add(entry)
    await session.flush()

    logger.log(
        _PY_LEVELS.get(level, logging.INFO),
        "[%s] %s",
        event,
        message,
        extra={"execution_id": execution_id, "event": event},
    )
    return entry


class ExecutionLogger:
    """Audit logger bound to one session and execution."""

    def __init__(self, session: AsyncSession, execution_id: int):
        self.session = session
        self.execution_id = execution_id

    async def info(self, event: str, message: str, **metadata) -> ExecutionLog:
        return await log_event(self.session, self.execution_id, INFO, event, message, metadata or None)

    async def warn(self, event: str, message: str, **metadata) -> ExecutionLog:
        return await log_event(self.session, self.execution_id, WARN, event, message, metadata or None)

    async def error(self, event: str, message: str, **metadata) -> ExecutionLog:
        return await log_event(self.session, self.execution_id, ERROR, event, message, metadata or None)


async def finish_execution(
    session: AsyncSession,
    execution_id: int,
    status: ExecutionStatus,
    *,
    items_found: Optional[int] = None,
    items_upserted: Optional[int] = None,
    error_message: Optional[str] = None,
) -> bool:
    """
    Move a PENDING execution to SUCCESS or FAILED.

    The UPDATE is conditional on the current status, so a re-delivered job
    can never move a terminal execution again.

    Returns:
        True if this call performed the transition
    """
    if status == ExecutionStatus.PENDING:
        raise ValueError("Executions can only transition out of PENDING")

    started_at = await session.scalar(
        select(Execution.started_at).where(Execution.id == execution_id)
    )
    if started_at is None:
        logger.warning(f"Execution {execution_id} not found; cannot mark {status.value}")
        return False

    completed_at = utcnow()
    values: dict[str, Any] = {
        "status": status.value,
        "completed_at": completed_at,
        "duration_ms": int((completed_at - started_at).total_seconds() * 1000),
    }
    if items_found is not None:
        values["items_found"] = items_found
    if items_upserted is not None:
        values["items_upserted"] = items_upserted
    if error_message is not None:
        values["error_message"] = error_message[:2000]

    result = await session.execute(
        update(Execution)
        .where(
            Execution.id == execution_id,
            Execution.status == ExecutionStatus.PENDING.value,
        )
        .values(**values)
    )
    transitioned = result.rowcount == 1
    if not transitioned:
        logger.info(
            f"Execution {execution_id} already terminal; {status.value} transition skipped"
        )
    return transitioned


async def fail_execution(
    session_factory: async_sessionmaker,
    execution_id: int,
    event: str,
    message: str,
    **metadata,
) -> bool:
    """Record an ERROR entry and mark the execution FAILED in its own transaction."""
    async with session_factory() as session:
        await log_event(session, execution_id, ERROR, event, message, metadata or None)
        transitioned = await finish_execution(
            session, execution_id, ExecutionStatus.FAILED, error_message=message
        )
        await session.commit()
    return transitioned


def execution_failure_hook(stage: str, session_factory: async_sessionmaker):
    """
    Permanent-failure hook for a stage worker.

    Marks the job's execution FAILED with an ``EXEC_FAILED`` log once the
    job will not be retried.
    """

    async def hook(job, exc: BaseException):
        await fail_execution(
            session_factory,
            job.execution_id,
            "EXEC_FAILED",
            f"{stage.capitalize()} failed: {exc}",
            stage=stage,
            errorType=type(exc).__name__,
        )

    return hook
