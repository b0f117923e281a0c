import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from loguru import logger

from firecrawl_client.errors import (
    RetryableRequestError,
    ServerStatusError,
    TransportError,
)
from firecrawl_client.models import HttpResponse, RetryPolicy

SleepFunc = Callable[[float], Awaitable[Any]]


class RequestTransport:
    """Issues single HTTP requests with bounded retry and exponential backoff.

    Network failures, timeouts and 5xx responses are retried; any other
    response (including 4xx) is handed back to the caller on the first
    attempt. Backoff only suspends the calling task.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.session = session
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep
        self.logger = logger

    async def _attempt(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json: Optional[Any],
    ) -> HttpResponse:
        try:
            async with self.session.request(
                method, url, headers=headers, json=json
            ) as response:
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RetryableRequestError(e) from e

        if response.status >= 500:
            raise RetryableRequestError(ServerStatusError(response.status))
        return HttpResponse(status=response.status, text=text, url=str(response.url))

    async def execute(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json: Optional[Any] = None,
        action: str = "send request",
        retry_policy: Optional[RetryPolicy] = None,
    ) -> HttpResponse:
        """Returns the first non-retryable response, or raises TransportError"""
        policy = retry_policy or self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._attempt(method, url, headers, json)
            except RetryableRequestError as e:
                if attempt >= policy.max_attempts:
                    self.logger.error(
                        f"{method} {url} failed after {attempt} attempts: {e.cause}"
                    )
                    raise TransportError(action, attempt, e.cause) from e.cause

                delay = policy.delay(attempt)
                self.logger.debug(
                    f"{method} {url} attempt {attempt} failed ({e.cause}), "
                    f"retrying in {delay:.2f}s"
                )
                await self.sleep(delay)
