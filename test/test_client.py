import asyncio

import pytest
from crawl_server import frame
from firecrawl_client.client import FirecrawlClient
from firecrawl_client.errors import ApiError, DecodeError, JobError, TransportError
from firecrawl_client.models import (
    CrawlParams,
    ExtractParams,
    JobKind,
    JobState,
    MapParams,
    ScrapeParams,
    SearchParams,
)


@pytest.mark.asyncio
async def test_crawl_url_returns_aggregated_status(server, client, fake_sleep):
    server.polls_until_complete = 2
    server.pages = [[{"markdown": "a"}], [{"markdown": "b"}]]

    status = await client.crawl_url(
        "https://example.com", CrawlParams(limit=10, max_depth=2), poll_interval=1
    )

    assert status.status == JobState.completed
    assert [doc["markdown"] for doc in status.data] == ["a", "b"]
    assert status.credits_used == 1
    assert status.expires_at == "2030-01-01T00:00:00Z"
    assert fake_sleep.delays == [1, 1]
    start = server.requests[0]
    assert start["path"] == "/v1/crawl"
    assert start["body"] == {"url": "https://example.com", "limit": 10, "maxDepth": 2}


@pytest.mark.asyncio
async def test_idempotency_key_is_sent_on_creation(server, client):
    handle = await client.async_crawl_url("https://example.com", idempotency_key="key-1")

    assert handle.kind == JobKind.crawl
    assert handle.idempotency_key == "key-1"
    assert server.idempotency_keys == ["key-1"]


@pytest.mark.asyncio
async def test_crawl_failure_raises_job_error(server, client):
    server.outcome = "failed"

    with pytest.raises(JobError) as exc_info:
        await client.crawl_url("https://example.com", poll_interval=0)

    assert exc_info.value.message == "Job failed on server"
    assert "complete crawl job" in str(exc_info.value)


@pytest.mark.asyncio
async def test_bad_credentials_raise_api_error(server, config, fake_sleep):
    bad_config = config.model_copy(update={"api_key": "wrong"})
    async with FirecrawlClient(config=bad_config, sleep=fake_sleep) as app:
        with pytest.raises(ApiError) as exc_info:
            await app.async_crawl_url("https://example.com")

    assert exc_info.value.status == 401
    assert str(exc_info.value) == (
        "Failed to start crawl job. Status: 401, Message: Unauthorized"
    )
    assert len(server.requests) == 1


@pytest.mark.asyncio
async def test_server_outage_raises_transport_error(server, client, fake_sleep):
    server.server_errors_before_success = 3

    with pytest.raises(TransportError) as exc_info:
        await client.check_crawl_status("job-1")

    assert exc_info.value.action == "check crawl status"
    assert fake_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_crawl_errors_and_cancel(server, client):
    errors = await client.check_crawl_errors("job-1")
    cancelled = await client.cancel_crawl("job-1")
    status = await client.check_crawl_status("job-1")

    assert errors["errors"][0]["url"] == "https://example.com/broken"
    assert cancelled == {"status": "cancelled"}
    assert status.status == JobState.cancelled
    assert status.success is False


@pytest.mark.asyncio
async def test_batch_scrape(server, client):
    server.polls_until_complete = 0
    server.pages = [["a"], ["b"]]

    status = await client.batch_scrape_urls(
        ["https://a.example", "https://b.example"], poll_interval=0
    )
    errors = await client.check_batch_scrape_errors("job-1")
    snapshot = await client.check_batch_scrape_status("job-2")

    assert status.data == ["a", "b"]
    assert snapshot.data == ["a", "b"]
    assert "errors" in errors
    assert server.requests[0]["body"] == {
        "urls": ["https://a.example", "https://b.example"]
    }


@pytest.mark.asyncio
async def test_crawl_url_and_watch(server, client):
    server.stream_frames = [frame("document", "a"), frame("done", ["a"])]

    watcher = await client.crawl_url_and_watch("https://example.com")
    done = []
    watcher.add_listener("done", done.append)
    await watcher.connect()
    await asyncio.wait_for(watcher.wait_closed(), timeout=5)

    assert done == [["a"]]


@pytest.mark.asyncio
async def test_batch_scrape_urls_and_watch(server, client):
    server.stream_frames = [frame("error", "quota exceeded")]

    watcher = await client.batch_scrape_urls_and_watch(["https://a.example"])
    errors = []
    watcher.add_listener("error", errors.append)
    await watcher.connect()
    await asyncio.wait_for(watcher.wait_closed(), timeout=5)

    assert errors == ["quota exceeded"]


@pytest.mark.asyncio
async def test_extract_polls_until_completed(server, client, fake_sleep):
    server.polls_until_complete = 2

    result = await client.extract(
        ExtractParams(urls=["https://example.com"], prompt="Get the title"),
        poll_interval=0.5,
    )

    assert result.success is True
    assert result.data == {"title": "Example"}
    assert fake_sleep.delays == [0.5, 0.5]
    body = server.requests[0]["body"]
    assert body["prompt"] == "Get the title"
    assert body["origin"] == "api-sdk"
    assert body["allowExternalLinks"] is False
    assert body["enableWebSearch"] is False


@pytest.mark.asyncio
async def test_extract_failure_raises_job_error(server, client):
    server.outcome = "failed"

    with pytest.raises(JobError) as exc_info:
        await client.extract(ExtractParams(prompt="x"), poll_interval=0)

    assert exc_info.value.message == "Extract failed"


@pytest.mark.asyncio
async def test_async_extract_and_status(server, client):
    handle = await client.async_extract(ExtractParams(prompt="x"), idempotency_key="e-1")
    status = await client.get_extract_status(handle.id)

    assert handle.kind == JobKind.extract
    assert status.status == JobState.processing
    assert server.idempotency_keys == ["e-1"]


@pytest.mark.asyncio
async def test_scrape_map_and_search(server, client):
    document = await client.scrape_url(
        "https://example.com", ScrapeParams(formats=["markdown"])
    )
    mapped = await client.map_url("https://example.com", MapParams(limit=5))
    results = await client.search("firecrawl", SearchParams(limit=3))

    assert document == {"markdown": "# https://example.com"}
    assert mapped["links"] == ["https://example.com", "https://example.com/about"]
    assert results["data"][0]["title"] == "firecrawl"
    search_body = server.requests[-1]["body"]
    assert search_body["limit"] == 3
    assert search_body["lang"] == "en"
    assert search_body["country"] == "us"


@pytest.mark.asyncio
async def test_completed_extract_without_success_raises_job_error(server, client):
    server.polls_until_complete = 0
    server.extract_success = False

    with pytest.raises(JobError) as exc_info:
        await client.extract(ExtractParams(prompt="x"), poll_interval=0)

    assert exc_info.value.state == JobState.completed
    assert exc_info.value.message == "Schema mismatch"


@pytest.mark.asyncio
async def test_creation_without_id_raises_decode_error(server, client):
    server.start_job_payload = {"success": True}

    with pytest.raises(DecodeError) as exc_info:
        await client.async_crawl_url("https://example.com")

    assert "start crawl job" in str(exc_info.value)


@pytest.mark.asyncio
async def test_creation_rejected_in_body_raises_api_error(server, client):
    server.start_job_payload = {"success": False, "error": "Invalid URL"}

    with pytest.raises(ApiError) as exc_info:
        await client.async_batch_scrape_urls(["not-a-url"])

    assert exc_info.value.message == "Invalid URL"
