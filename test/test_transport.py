import aiohttp
import pytest
from firecrawl_client.errors import ServerStatusError, TransportError
from firecrawl_client.models import RetryPolicy
from firecrawl_client.transport import RequestTransport

POLICY = RetryPolicy(max_attempts=3, backoff_factor=0.5, multiplier=2.0)


@pytest.mark.asyncio
async def test_retries_server_errors_until_success(server, config, fake_sleep):
    """Two 5xx responses followed by a 200 are absorbed by the retry loop."""
    server.server_errors_before_success = 2

    async with aiohttp.ClientSession() as session:
        transport = RequestTransport(session, POLICY, sleep=fake_sleep)
        response = await transport.execute(
            "POST", f"{server.base_url}/v1/crawl", config.headers(), json={"url": "x"}
        )

    assert response.status == 200
    assert len(server.requests) == 3
    assert fake_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_transport_error(server, config, fake_sleep):
    """Every attempt failing with 5xx ends in TransportError with growing delays."""
    server.server_errors_before_success = 10

    async with aiohttp.ClientSession() as session:
        transport = RequestTransport(session, POLICY, sleep=fake_sleep)
        with pytest.raises(TransportError) as exc_info:
            await transport.execute(
                "GET",
                f"{server.base_url}/v1/crawl/abc",
                config.headers(),
                action="check crawl status",
            )

    error = exc_info.value
    assert error.attempts == 3
    assert error.action == "check crawl status"
    assert isinstance(error.last_cause, ServerStatusError)
    assert error.last_cause.status == 500
    assert "check crawl status" in str(error)
    assert len(server.requests) == 3
    assert fake_sleep.delays == [1.0, 2.0]
    assert fake_sleep.delays == sorted(fake_sleep.delays)


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(server, fake_sleep):
    """A 401 is returned on the first attempt."""
    async with aiohttp.ClientSession() as session:
        transport = RequestTransport(session, POLICY, sleep=fake_sleep)
        response = await transport.execute(
            "GET",
            f"{server.base_url}/v1/crawl/abc",
            {"Authorization": "Bearer wrong"},
        )

    assert response.status == 401
    assert "Unauthorized" in response.text
    assert len(server.requests) == 1
    assert fake_sleep.delays == []


@pytest.mark.asyncio
async def test_connection_failures_are_retried(unused_tcp_port_factory, fake_sleep):
    """Nothing listening on the port: every attempt fails at the network layer."""
    url = f"http://localhost:{unused_tcp_port_factory()}/v1/crawl/abc"

    async with aiohttp.ClientSession() as session:
        transport = RequestTransport(session, POLICY, sleep=fake_sleep)
        with pytest.raises(TransportError) as exc_info:
            await transport.execute("GET", url, {})

    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_cause, aiohttp.ClientConnectionError)
    assert fake_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_per_call_policy_overrides_default(server, config, fake_sleep):
    server.server_errors_before_success = 10

    async with aiohttp.ClientSession() as session:
        transport = RequestTransport(session, POLICY, sleep=fake_sleep)
        with pytest.raises(TransportError) as exc_info:
            await transport.execute(
                "GET",
                f"{server.base_url}/v1/crawl/abc",
                config.headers(),
                retry_policy=RetryPolicy(max_attempts=1),
            )

    assert exc_info.value.attempts == 1
    assert fake_sleep.delays == []
