import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from firecrawl_client.errors import (
    ApiError,
    DecodeError,
    api_error_from_response,
    decode_json,
)
from firecrawl_client.models import (
    BatchScrapeParams,
    ClientConfig,
    CrawlParams,
    ExtractParams,
    ExtractStatus,
    JobHandle,
    JobKind,
    JobStatus,
    MapParams,
    ScrapeParams,
    SearchParams,
)
from firecrawl_client.poller import JobPoller
from firecrawl_client.transport import RequestTransport, SleepFunc
from firecrawl_client.watcher import CrawlWatcher


class FirecrawlClient:
    """Async client for the scraping service.

    Use as an async context manager so the underlying HTTP session is closed::

        async with FirecrawlClient(api_key="fc-...") as app:
            status = await app.crawl_url("https://example.com")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        config: Optional[ClientConfig] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.config = config or ClientConfig.from_env(api_key=api_key, api_url=api_url)
        self.sleep = sleep
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None
        self._transport: Optional[RequestTransport] = None
        self.logger.debug(f"Initialized FirecrawlClient with API URL: {self.config.api_url}")

    async def __aenter__(self) -> "FirecrawlClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
            self._transport = None

    @property
    def transport(self) -> RequestTransport:
        if self._transport is None:
            self._session = aiohttp.ClientSession()
            self._transport = RequestTransport(
                self._session, self.config.retry_policy, sleep=self.sleep
            )
        return self._transport

    @property
    def poller(self) -> JobPoller:
        return JobPoller(self.transport, sleep=self.sleep)

    def _handle(
        self, job_id: str, kind: JobKind, idempotency_key: Optional[str] = None
    ) -> JobHandle:
        return JobHandle(
            id=job_id, kind=kind, config=self.config, idempotency_key=idempotency_key
        )

    async def _request_json(
        self,
        method: str,
        path_or_url: str,
        action: str,
        body: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        url = path_or_url
        if path_or_url.startswith("/"):
            url = f"{self.config.api_url}{path_or_url}"
        response = await self.transport.execute(
            method,
            url,
            self.config.headers(idempotency_key),
            json=body,
            action=action,
        )
        if not response.ok:
            error = api_error_from_response(response, action)
            self.logger.error(str(error))
            raise error
        return decode_json(response, action)

    def _checked_payload(self, payload: Any, action: str, key: str) -> Dict[str, Any]:
        """Returns the payload when it reports success and carries ``key``"""
        if not isinstance(payload, dict):
            raise DecodeError(action, f"Unexpected response: {payload}")
        if payload.get("success") and payload.get(key) is not None:
            return payload
        if payload.get("error"):
            raise ApiError(action, 200, payload["error"])
        raise ApiError(action, 200, str(payload))

    async def _start_job(
        self,
        kind: JobKind,
        body: Dict[str, Any],
        action: str,
        idempotency_key: Optional[str],
    ) -> JobHandle:
        payload = await self._request_json(
            "POST", kind.path, action, body=body, idempotency_key=idempotency_key
        )
        if not isinstance(payload, dict) or not payload.get("id"):
            if isinstance(payload, dict) and payload.get("error"):
                raise ApiError(action, 200, payload["error"])
            raise DecodeError(action, "Job ID not returned from request.")
        self.logger.info(f"Started {kind.label} job {payload['id']}")
        return self._handle(payload["id"], kind, idempotency_key)

    # Scrape, search and map

    async def scrape_url(
        self, url: str, params: Optional[ScrapeParams] = None
    ) -> Dict[str, Any]:
        body = {"url": url, **(params or ScrapeParams()).to_body()}
        payload = await self._request_json("POST", "/v1/scrape", "scrape URL", body)
        return self._checked_payload(payload, "scrape URL", "data")["data"]

    async def search(
        self, query: str, params: Optional[SearchParams] = None
    ) -> Dict[str, Any]:
        search_params = (params or SearchParams()).model_copy(update={"query": query})
        payload = await self._request_json(
            "POST", "/v1/search", "search", search_params.to_body()
        )
        if not isinstance(payload, dict):
            raise DecodeError("search", f"Unexpected response: {payload}")
        return payload

    async def map_url(
        self, url: str, params: Optional[MapParams] = None
    ) -> Dict[str, Any]:
        body = {"url": url, **(params or MapParams()).to_body()}
        payload = await self._request_json("POST", "/v1/map", "map", body)
        return self._checked_payload(payload, "map", "links")

    # Crawl

    async def async_crawl_url(
        self,
        url: str,
        params: Optional[CrawlParams] = None,
        idempotency_key: Optional[str] = None,
    ) -> JobHandle:
        body = {"url": url, **(params or CrawlParams()).to_body()}
        return await self._start_job(
            JobKind.crawl, body, "start crawl job", idempotency_key
        )

    async def crawl_url(
        self,
        url: str,
        params: Optional[CrawlParams] = None,
        poll_interval: float = 2,
        idempotency_key: Optional[str] = None,
    ) -> JobStatus:
        handle = await self.async_crawl_url(url, params, idempotency_key)
        return await self.poller.await_completion(handle, poll_interval)

    async def check_crawl_status(self, job_id: str) -> JobStatus:
        return await self.poller.check_status(self._handle(job_id, JobKind.crawl))

    async def check_crawl_errors(self, job_id: str) -> Dict[str, Any]:
        handle = self._handle(job_id, JobKind.crawl)
        return await self._request_json("GET", handle.errors_url, "check crawl errors")

    async def cancel_crawl(self, job_id: str) -> Dict[str, Any]:
        handle = self._handle(job_id, JobKind.crawl)
        return await self._request_json("DELETE", handle.status_url, "cancel crawl job")

    async def crawl_url_and_watch(
        self,
        url: str,
        params: Optional[CrawlParams] = None,
        idempotency_key: Optional[str] = None,
    ) -> CrawlWatcher:
        handle = await self.async_crawl_url(url, params, idempotency_key)
        return self._watch(handle)

    # Batch scrape

    async def async_batch_scrape_urls(
        self,
        urls: List[str],
        params: Optional[BatchScrapeParams] = None,
        idempotency_key: Optional[str] = None,
    ) -> JobHandle:
        body = {"urls": urls, **(params or BatchScrapeParams()).to_body()}
        return await self._start_job(
            JobKind.batch_scrape, body, "start batch scrape job", idempotency_key
        )

    async def batch_scrape_urls(
        self,
        urls: List[str],
        params: Optional[BatchScrapeParams] = None,
        poll_interval: float = 2,
        idempotency_key: Optional[str] = None,
    ) -> JobStatus:
        handle = await self.async_batch_scrape_urls(urls, params, idempotency_key)
        return await self.poller.await_completion(handle, poll_interval)

    async def check_batch_scrape_status(self, job_id: str) -> JobStatus:
        return await self.poller.check_status(self._handle(job_id, JobKind.batch_scrape))

    async def check_batch_scrape_errors(self, job_id: str) -> Dict[str, Any]:
        handle = self._handle(job_id, JobKind.batch_scrape)
        return await self._request_json(
            "GET", handle.errors_url, "check batch scrape errors"
        )

    async def batch_scrape_urls_and_watch(
        self,
        urls: List[str],
        params: Optional[BatchScrapeParams] = None,
        idempotency_key: Optional[str] = None,
    ) -> CrawlWatcher:
        handle = await self.async_batch_scrape_urls(urls, params, idempotency_key)
        return self._watch(handle)

    def _watch(self, handle: JobHandle) -> CrawlWatcher:
        # Not connected yet, so listeners can be attached before any event arrives.
        return CrawlWatcher(handle.id, self.config)

    # Extract

    async def async_extract(
        self, params: ExtractParams, idempotency_key: Optional[str] = None
    ) -> JobHandle:
        return await self._start_job(
            JobKind.extract, params.to_body(), "start extract job", idempotency_key
        )

    async def extract(
        self, params: ExtractParams, poll_interval: float = 2
    ) -> ExtractStatus:
        handle = await self.async_extract(params)
        return await self.poller.await_completion(handle, poll_interval)

    async def get_extract_status(self, job_id: str) -> ExtractStatus:
        return await self.poller.check_extract_status(
            self._handle(job_id, JobKind.extract)
        )
