"""Tests for the execution audit trail and status transitions."""

import pytest

from harvester.db.audit import (
    ExecutionLogger,
    execution_failure_hook,
    fail_execution,
    finish_execution,
)
from harvester.db.models import ExecutionStatus
from harvester.errors import PermanentFetchError
from harvester.queue.jobs import FetchJob


@pytest.mark.asyncio
async def test_logger_records_levels_and_metadata(session_factory, source, make_execution, execution_logs):
    execution_id = await make_execution(source.id)

    async with session_factory() as session:
        audit = ExecutionLogger(session, execution_id)
        await audit.info("FETCH_START", "Fetching", url=source.url)
        await audit.warn("FETCH_CAP_REACHED", "Page cap reached")
        await session.commit()

    logs = await execution_logs(execution_id)
    assert [(log.level, log.event) for log in logs] == [
        ("INFO", "FETCH_START"),
        ("WARN", "FETCH_CAP_REACHED"),
    ]
    assert logs[0].details == {"url": source.url}
    assert logs[1].details is None


@pytest.mark.asyncio
async def test_finish_transitions_once(session_factory, source, make_execution, get_execution):
    execution_id = await make_execution(source.id)

    async with session_factory() as session:
        assert await finish_execution(
            session, execution_id, ExecutionStatus.SUCCESS, items_found=5, items_upserted=3
        )
        await session.commit()

    async with session_factory() as session:
        assert not await finish_execution(
            session, execution_id, ExecutionStatus.FAILED, error_message="late failure"
        )
        await session.commit()

    execution = await get_execution(execution_id)
    assert execution.status == ExecutionStatus.SUCCESS.value
    assert execution.items_found == 5
    assert execution.items_upserted == 3
    assert execution.error_message is None
    assert execution.completed_at is not None
    assert execution.duration_ms >= 0


@pytest.mark.asyncio
async def test_finish_rejects_pending(session_factory, source, make_execution):
    execution_id = await make_execution(source.id)

    async with session_factory() as session:
        with pytest.raises(ValueError):
            await finish_execution(session, execution_id, ExecutionStatus.PENDING)


@pytest.mark.asyncio
async def test_finish_missing_execution(session_factory):
    async with session_factory() as session:
        assert not await finish_execution(session, 999, ExecutionStatus.SUCCESS)


@pytest.mark.asyncio
async def test_fail_execution_truncates_message(
    session_factory, source, make_execution, execution_logs, get_execution
):
    execution_id = await make_execution(source.id)

    assert await fail_execution(session_factory, execution_id, "WRITE_FAIL", "x" * 3000, batch=2)

    execution = await get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED.value
    assert len(execution.error_message) == 2000
    log = (await execution_logs(execution_id))[-1]
    assert (log.level, log.event, log.details) == ("ERROR", "WRITE_FAIL", {"batch": 2})


@pytest.mark.asyncio
async def test_failure_hook(session_factory, source, make_execution, execution_logs, get_execution):
    execution_id = await make_execution(source.id)
    hook = execution_failure_hook("fetch", session_factory)

    await hook(FetchJob(source_id=source.id, execution_id=execution_id), PermanentFetchError("HTTP 404"))

    log = (await execution_logs(execution_id))[-1]
    assert log.event == "EXEC_FAILED"
    assert log.message == "Fetch failed: HTTP 404"
    assert log.details == {"stage": "fetch", "errorType": "PermanentFetchError"}
    assert (await get_execution(execution_id)).status == ExecutionStatus.FAILED.value
