import asyncio
from typing import AsyncGenerator, List

import pytest
import pytest_asyncio
from crawl_server import CrawlServer
from firecrawl_client.client import FirecrawlClient
from firecrawl_client.models import ClientConfig, RetryPolicy

API_KEY = "fc-test"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[CrawlServer, None]:
    """Start and yield a CrawlServer on a random port."""
    server_instance = CrawlServer(api_key=API_KEY)
    await server_instance.start(port=unused_tcp_port_factory())
    try:
        yield server_instance
    finally:
        await server_instance.stop()


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def config(server) -> ClientConfig:
    return ClientConfig(
        api_url=server.base_url,
        api_key=API_KEY,
        retry_policy=RetryPolicy(max_attempts=3, backoff_factor=0.5),
    )


@pytest_asyncio.fixture
async def client(config, fake_sleep) -> AsyncGenerator[FirecrawlClient, None]:
    async with FirecrawlClient(config=config, sleep=fake_sleep) as app:
        yield app
