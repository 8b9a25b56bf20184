"""Root conftest — suite markers and Redis fixtures.

Unit tests run against an in-process ``fakeredis`` server.  Integration
tests opt into a real Redis 7 testcontainer with
``CHATENGINE_RUN_REDIS_CONTAINER=1``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import time

import pytest
import redis as sync_redis
from dotenv import load_dotenv
from fakeredis import FakeAsyncRedis
from fakeredis import FakeServer
from redis.asyncio import Redis
from testcontainers.core.container import DockerContainer

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]
SUITE_MARKERS = {"unit": pytest.mark.unit, "integration": pytest.mark.integration}

# Repository-root .env may carry the container opt-in; real env vars win.
load_dotenv(dotenv_path=ROOT / ".env", override=False)


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Mark tests by suite directory (``tests/unit``, ``tests/integration``)."""
    for item in items:
        try:
            parts = Path(str(item.fspath)).resolve().relative_to(ROOT).parts
        except ValueError:
            continue
        if len(parts) > 2 and parts[0] == "tests" and parts[1] in SUITE_MARKERS:
            item.add_marker(SUITE_MARKERS[parts[1]])


def redis_container_enabled() -> bool:
    return os.getenv("CHATENGINE_RUN_REDIS_CONTAINER", "0") == "1"


def _wait_for_redis(host: str, port: int, attempts: int = 30) -> None:
    client = sync_redis.Redis(host=host, port=port)
    try:
        for attempt in range(1, attempts + 1):
            try:
                client.ping()
                return
            except sync_redis.ConnectionError as exc:
                if attempt == attempts:
                    raise
                logger.debug("Redis not ready (%d/%d): %s", attempt, attempts, exc)
                time.sleep(1)
    finally:
        client.close()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


@pytest.fixture()
async def redis_client():
    """Yield an async Redis double backed by its own in-process server."""
    client = FakeAsyncRedis(server=FakeServer())
    yield client
    await client.aclose()


@pytest.fixture(scope="session")
def redis_container():
    """Start one Redis 7 container for the test session and yield its URL."""
    if not redis_container_enabled():
        pytest.skip("set CHATENGINE_RUN_REDIS_CONTAINER=1 to run against Redis")

    with DockerContainer("redis:7-alpine").with_exposed_ports(6379) as container:
        host = container.get_container_host_ip()
        port = int(container.get_exposed_port(6379))
        _wait_for_redis(host, port)
        yield f"redis://{host}:{port}"


@pytest.fixture()
async def container_redis_client(redis_container):
    """Yield an async client on the container, flushed before and after the test."""
    client = Redis.from_url(redis_container)
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()
