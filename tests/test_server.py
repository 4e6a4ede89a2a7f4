import asyncio
import signal

import pytest
from structlog.testing import capture_logs

import api.server as server
from api.server import _install_loop_exception_handler, create_app


class RecordingDatabase:
    """Stands in for the asyncpg-backed Database in lifespan tests."""

    def __init__(self):
        self.events: list[str] = []

    async def initialize(self):
        self.events.append("initialize")

    async def close(self):
        self.events.append("close")


@pytest.fixture
async def restore_loop_handler():
    loop = asyncio.get_running_loop()
    previous = loop.get_exception_handler()
    yield loop
    loop.set_exception_handler(previous)


# =============================================================================
# PROCESS BOUNDARY
# =============================================================================

async def test_loop_exception_triggers_graceful_shutdown(restore_loop_handler, monkeypatch):
    loop = restore_loop_handler
    kills = []
    monkeypatch.setattr(server.os, "kill", lambda pid, sig: kills.append((pid, sig)))

    _install_loop_exception_handler()
    handler = loop.get_exception_handler()
    assert handler is not None

    with capture_logs() as logs:
        handler(loop, {"message": "Task exception was never retrieved", "exception": RuntimeError("boom")})

    assert kills == [(server.os.getpid(), signal.SIGTERM)]
    critical = [entry for entry in logs if entry["log_level"] == "critical"]
    assert critical[0]["event"] == "unhandled_loop_exception"
    assert critical[0]["error"] == "boom"


async def test_lifespan_opens_and_closes_resources(container, gateway, restore_loop_handler):
    database = RecordingDatabase()
    container.database = database
    app = create_app(container, configure_logs=False)

    async with app.router.lifespan_context(app):
        assert database.events == ["initialize"]
        assert not gateway.called("close")

    assert database.events == ["initialize", "close"]
    assert gateway.called("close")


async def test_container_shutdown_closes_gateway_then_database(container, gateway):
    order = []
    database = RecordingDatabase()

    async def close_database():
        order.append("database")

    async def close_gateway():
        order.append("gateway")

    database.close = close_database
    gateway.close = close_gateway
    container.database = database

    await container.shutdown()

    assert order == ["gateway", "database"]
