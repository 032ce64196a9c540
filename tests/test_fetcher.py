"""Tests for the fetch stage: caps, pagination, fingerprinting and routing."""

import gzip
import json

import httpx
import pytest

from harvester.db.models import ExecutionStatus, SourceKind, SourceType
from harvester.errors import ContentTooLargeError, PermanentFetchError, UnsupportedAffiliateNetworkError
from harvester.ingest.content import compute_content_hash
from harvester.ingest.fetcher import FetchCaps, FetchStage, PaginationConfig, extract_json_items
from harvester.ingest.http_client import SitePolicy
from harvester.queue.jobs import EXTRACT_QUEUE, NORMALIZE_QUEUE, FetchJob

PAGINATED = {"type": "query_param", "param": "page", "startValue": 1, "increment": 1, "maxPages": 10}


def make_stage(session_factory, queues, handler, **caps) -> FetchStage:
    limits = {"max_page_bytes": 1024 * 1024, "max_total_bytes": 4 * 1024 * 1024, "max_pages": 50, "max_items": 1000}
    limits.update(caps)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FetchStage(
        session_factory,
        queues,
        client,
        caps=FetchCaps(**limits),
        policy=SitePolicy(name="test", max_attempts=1),
    )


def page_number(request: httpx.Request) -> int:
    return int(request.url.params.get("page", "1"))


def test_pagination_urls():
    query = PaginationConfig.from_source(PAGINATED)
    path = PaginationConfig.from_source({"type": "path", "startValue": 0, "increment": 20})

    assert query.page_url("https://shop.example/api?sort=price", 2) == "https://shop.example/api?sort=price&page=2"
    assert path.page_url("https://shop.example/catalog/", 40) == "https://shop.example/catalog/40"
    assert not PaginationConfig.from_source(None).enabled


def test_extract_json_items():
    assert extract_json_items('[{"a": 1}]') == [{"a": 1}]
    assert extract_json_items('{"results": [1, 2]}') == [1, 2]
    assert extract_json_items('{"unrelated": true}') == []
    assert extract_json_items("<html></html>") is None


@pytest.mark.asyncio
async def test_pagination_capped_by_hard_ceiling(
    session_factory, queues, make_source, make_execution, execution_logs
):
    requested = []

    def handler(request):
        requested.append(str(request.url))
        n = page_number(request)
        return httpx.Response(200, json={"products": [{"name": f"Item {n}", "price": n}]})

    source = await make_source(pagination_config=PAGINATED)
    execution_id = await make_execution(source.id)

    await make_stage(session_factory, queues, handler, max_pages=3).handle(
        FetchJob(source_id=source.id, execution_id=execution_id)
    )

    assert requested == [f"{source.url}?page={n}" for n in (1, 2, 3)]

    logs = await execution_logs(execution_id)
    cap = next(log for log in logs if log.event == "FETCH_CAP_REACHED")
    assert cap.level == "WARN"
    assert cap.details["cap"] == "pages"
    assert cap.details["configuredMaxPages"] == 10

    [job] = queues[EXTRACT_QUEUE].payloads()
    assert [i["name"] for i in json.loads(job["content"])] == ["Item 1", "Item 2", "Item 3"]
    assert job["sourceType"] == SourceType.JSON.value
    assert job["contentHash"] == compute_content_hash(job["content"])


@pytest.mark.asyncio
async def test_empty_json_page_stops_pagination(
    session_factory, queues, make_source, make_execution, execution_logs
):
    def handler(request):
        n = page_number(request)
        items = [{"name": f"Item {n}", "price": n}] if n <= 2 else []
        return httpx.Response(200, json=items)

    source = await make_source(pagination_config=PAGINATED)
    execution_id = await make_execution(source.id)

    await make_stage(session_factory, queues, handler).handle(FetchJob(source_id=source.id, execution_id=execution_id))

    events = [log.event for log in await execution_logs(execution_id)]
    assert "FETCH_CAP_REACHED" not in events
    fetch_ok = next(log for log in await execution_logs(execution_id) if log.event == "FETCH_OK")
    assert fetch_ok.details["pagesFetched"] == 3
    assert fetch_ok.details["itemsCollected"] == 2


@pytest.mark.asyncio
async def test_item_cap_truncates_collection(session_factory, queues, make_source, make_execution, execution_logs):
    def handler(request):
        n = page_number(request)
        return httpx.Response(200, json=[{"name": f"Item {n}-{i}", "price": 1} for i in range(2)])

    source = await make_source(pagination_config=PAGINATED)
    execution_id = await make_execution(source.id)

    await make_stage(session_factory, queues, handler, max_items=3).handle(
        FetchJob(source_id=source.id, execution_id=execution_id)
    )

    cap = next(log for log in await execution_logs(execution_id) if log.event == "FETCH_CAP_REACHED")
    assert cap.details["cap"] == "items"
    [job] = queues[EXTRACT_QUEUE].payloads()
    assert len(json.loads(job["content"])) == 3


@pytest.mark.asyncio
async def test_later_oversized_page_keeps_collected_pages(
    session_factory, queues, make_source, make_execution, execution_logs
):
    def handler(request):
        if request.url.path.endswith("/2"):
            return httpx.Response(200, content=b"x" * 500)
        return httpx.Response(200, content=b"<html>page one</html>")

    source = await make_source(
        url="https://ammodepot.example/catalog",
        source_type=SourceType.HTML.value,
        pagination_config={"type": "path", "maxPages": 5},
    )
    execution_id = await make_execution(source.id)

    await make_stage(session_factory, queues, handler, max_page_bytes=100).handle(
        FetchJob(source_id=source.id, execution_id=execution_id)
    )

    cap = next(log for log in await execution_logs(execution_id) if log.event == "FETCH_CAP_REACHED")
    assert cap.details["cap"] == "page_bytes"
    [job] = queues[EXTRACT_QUEUE].payloads()
    assert job["content"] == "<html>page one</html>"


@pytest.mark.asyncio
async def test_first_page_too_large_fails(session_factory, queues, make_source, make_execution, execution_logs):
    def handler(request):
        return httpx.Response(200, content=b"x" * 500)

    source = await make_source(source_type=SourceType.HTML.value)
    execution_id = await make_execution(source.id)

    with pytest.raises(ContentTooLargeError):
        await make_stage(session_factory, queues, handler, max_page_bytes=100).handle(
            FetchJob(source_id=source.id, execution_id=execution_id)
        )

    events = [log.event for log in await execution_logs(execution_id)]
    assert events == ["FETCH_START", "FETCH_FAIL"]
    assert queues[EXTRACT_QUEUE].payloads() == []


@pytest.mark.asyncio
async def test_not_found_is_permanent(session_factory, queues, make_source, make_execution):
    def handler(request):
        return httpx.Response(404)

    source = await make_source()
    execution_id = await make_execution(source.id)

    with pytest.raises(PermanentFetchError):
        await make_stage(session_factory, queues, handler).handle(
            FetchJob(source_id=source.id, execution_id=execution_id)
        )


@pytest.mark.asyncio
async def test_gzip_body_is_decompressed(session_factory, queues, make_source, make_execution):
    body = json.dumps([{"name": "Federal 9mm", "price": 18.99}]).encode()

    def handler(request):
        return httpx.Response(200, content=gzip.compress(body))

    source = await make_source(url="https://ammodepot.example/export.json.gz")
    execution_id = await make_execution(source.id)

    await make_stage(session_factory, queues, handler).handle(FetchJob(source_id=source.id, execution_id=execution_id))

    [job] = queues[EXTRACT_QUEUE].payloads()
    assert json.loads(job["content"]) == [{"name": "Federal 9mm", "price": 18.99}]


@pytest.mark.asyncio
async def test_unchanged_feed_short_circuits(
    session_factory, queues, make_source, make_execution, execution_logs, get_execution
):
    html = "<html><body>catalog</body></html>"

    def handler(request):
        return httpx.Response(200, text=html)

    source = await make_source(source_type=SourceType.HTML.value, feed_hash=compute_content_hash(html))
    execution_id = await make_execution(source.id)

    await make_stage(session_factory, queues, handler).handle(FetchJob(source_id=source.id, execution_id=execution_id))

    events = [log.event for log in await execution_logs(execution_id)]
    assert events == ["FETCH_START", "FETCH_OK", "FEED_UNCHANGED", "EXEC_DONE"]
    execution = await get_execution(execution_id)
    assert execution.status == ExecutionStatus.SUCCESS.value
    assert execution.items_found == 0
    assert execution.items_upserted == 0
    assert queues[EXTRACT_QUEUE].payloads() == []
    assert queues[NORMALIZE_QUEUE].payloads() == []


@pytest.mark.asyncio
async def test_changed_feed_routes_to_extract(session_factory, queues, make_source, make_execution, execution_logs):
    def handler(request):
        return httpx.Response(200, text="<html>new</html>")

    source = await make_source(source_type=SourceType.HTML.value, feed_hash="stale")
    execution_id = await make_execution(source.id)

    await make_stage(session_factory, queues, handler).handle(FetchJob(source_id=source.id, execution_id=execution_id))

    events = [log.event for log in await execution_logs(execution_id)]
    assert events == ["FETCH_START", "FETCH_OK", "FEED_CHANGED", "EXTRACT_QUEUED"]
    assert await queues[EXTRACT_QUEUE].in_flight(f"extract_{execution_id}")


@pytest.mark.asyncio
async def test_affiliate_feed_routes_to_normalize(
    session_factory, queues, make_source, make_execution, execution_logs, get_execution
):
    csv_body = (
        "Name,CurrentPrice,Url,StockAvailability,Gtin\n"
        "Federal 9mm 115gr FMJ 50 Rounds,18.99,https://shop.example/f9,InStock,029465064549\n"
        "Hornady 6.5 Creedmoor 140gr,32.50,https://shop.example/h65,OutOfStock,\n"
    )

    def handler(request):
        return httpx.Response(200, text=csv_body)

    source = await make_source(
        source_type=SourceType.FEED.value,
        source_kind=SourceKind.AFFILIATE_FEED.value,
        affiliate_network="IMPACT",
    )
    execution_id = await make_execution(source.id)

    await make_stage(session_factory, queues, handler).handle(FetchJob(source_id=source.id, execution_id=execution_id))

    events = [log.event for log in await execution_logs(execution_id)]
    assert events[-3:] == ["PARSE_START", "PARSE_OK", "NORMALIZE_QUEUED"]
    assert queues[EXTRACT_QUEUE].payloads() == []

    [job] = queues[NORMALIZE_QUEUE].payloads()
    assert job["executionId"] == execution_id
    assert [i["name"] for i in job["rawItems"]] == ["Federal 9mm 115gr FMJ 50 Rounds", "Hornady 6.5 Creedmoor 140gr"]
    assert [i["inStock"] for i in job["rawItems"]] == [True, False]
    assert (await get_execution(execution_id)).items_found == 2


@pytest.mark.asyncio
async def test_unsupported_affiliate_network(session_factory, queues, make_source, make_execution):
    def handler(request):
        return httpx.Response(200, text="Name,Price\nA,1\n")

    source = await make_source(source_type=SourceType.FEED.value, affiliate_network="CJ")
    execution_id = await make_execution(source.id)

    with pytest.raises(UnsupportedAffiliateNetworkError):
        await make_stage(session_factory, queues, handler).handle(
            FetchJob(source_id=source.id, execution_id=execution_id)
        )

    assert queues[NORMALIZE_QUEUE].payloads() == []
