"""Root conftest — suite markers and the shared Redis server.

Integration tests reuse ``NOCTURNE_TEST_REDIS_URL`` when it is set
(typically from the repository ``.env``); otherwise a Redis 7 container
is started once for the session.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Iterator
from pathlib import Path

import pytest
import redis as sync_redis
from dotenv import load_dotenv
from testcontainers.core.container import DockerContainer

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]

# Existing environment variables win over the .env file.
load_dotenv(dotenv_path=ROOT / ".env", override=False)

_SUITES = {"unit": pytest.mark.unit, "integration": pytest.mark.integration}


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Mark each test with its suite, taken from ``tests/<suite>/``."""
    for item in items:
        try:
            parts = Path(str(item.fspath)).resolve().relative_to(ROOT).parts
        except ValueError:
            continue
        if len(parts) >= 2 and parts[0] == "tests" and parts[1] in _SUITES:
            item.add_marker(_SUITES[parts[1]])


def _wait_until_ready(url: str, attempts: int = 30) -> None:
    client = sync_redis.Redis.from_url(url)
    try:
        for attempt in range(1, attempts + 1):
            try:
                client.ping()
                return
            except (sync_redis.ConnectionError, sync_redis.TimeoutError) as exc:
                if attempt == attempts:
                    raise
                logger.debug("redis not ready (%d/%d): %s", attempt, attempts, exc)
                time.sleep(1)
    finally:
        client.close()


@pytest.fixture(scope="session")
def redis_container() -> Iterator[str]:
    """Yield the URL of a Redis server for the whole session."""
    configured = os.environ.get("NOCTURNE_TEST_REDIS_URL")
    if configured:
        _wait_until_ready(configured)
        yield configured
        return

    with DockerContainer("redis:7-alpine").with_exposed_ports(6379) as container:
        host = container.get_container_host_ip()
        port = container.get_exposed_port(6379)
        url = f"redis://{host}:{port}"
        _wait_until_ready(url)
        yield url
