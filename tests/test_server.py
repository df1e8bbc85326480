"""Tests for startup sequencing and graceful shutdown of the server."""

import asyncio
import signal
import socket
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest
import uvicorn
from fastapi import APIRouter, FastAPI

from backend.app import server as server_module
from backend.app.core.shutdown import ShutdownCoordinator, ShutdownState
from backend.app.server import BackendServer, DrainingServer, bind_socket, main
from tests.fakes import FakeDatabase


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def port_refuses_connections(port: int) -> bool:
    try:
        _, writer = await asyncio.open_connection("127.0.0.1", port)
    except OSError:
        return True
    writer.close()
    return False


def build_slow_router(events: list, entered: list, release: asyncio.Event) -> APIRouter:
    router = APIRouter()

    @router.get("/slow")
    async def slow():
        entered.append(True)
        await release.wait()
        events.append("request_done")
        return {"success": True}

    return router


class TestBindSocket:
    """Tests for bind_socket."""

    def test_binds_ephemeral_port(self):
        sock = bind_socket("127.0.0.1", 0)
        try:
            assert sock.getsockname()[1] > 0
        finally:
            sock.close()

    def test_port_in_use_raises(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        try:
            with pytest.raises(OSError):
                bind_socket("127.0.0.1", blocker.getsockname()[1])
        finally:
            blocker.close()


class TestDrainingServer:
    """Tests for signal handling of DrainingServer."""

    @pytest.fixture
    def draining_server(self, make_settings):
        coordinator = ShutdownCoordinator(AsyncMock())
        return DrainingServer(uvicorn.Config(FastAPI(), log_config=None), coordinator, make_settings())

    def test_signal_starts_drain(self, draining_server):
        draining_server.handle_exit(signal.SIGTERM, None)

        assert draining_server.should_exit is True
        assert draining_server.force_exit is False
        assert draining_server.coordinator.state is ShutdownState.DRAINING

    def test_repeated_sigterm_keeps_draining(self, draining_server):
        draining_server.handle_exit(signal.SIGTERM, None)
        draining_server.handle_exit(signal.SIGTERM, None)

        assert draining_server.force_exit is False

    def test_second_sigint_forces_exit(self, draining_server):
        draining_server.handle_exit(signal.SIGINT, None)
        draining_server.handle_exit(signal.SIGINT, None)

        assert draining_server.force_exit is True


class TestBackendServer:
    """Tests for the startup sequence and the drain scenario."""

    @pytest.mark.asyncio
    async def test_database_unreachable_exits_1_without_binding(self, make_settings):
        database = FakeDatabase(connected=False, fail_connect=True)
        backend = BackendServer(make_settings(host="127.0.0.1", port=0), database=database)

        with patch.object(server_module, "bind_socket") as bind:
            exit_code = await backend.run()

        assert exit_code == 1
        bind.assert_not_called()
        assert backend.server is None
        assert backend.port is None

    @pytest.mark.asyncio
    async def test_port_in_use_exits_1_and_closes_database(self, make_settings):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        database = FakeDatabase(connected=False)
        try:
            backend = BackendServer(
                make_settings(host="127.0.0.1", port=blocker.getsockname()[1]),
                database=database,
            )
            exit_code = await backend.run()
        finally:
            blocker.close()

        assert exit_code == 1
        assert database.events == ["db_connected", "db_closed"]
        assert backend.server is None

    @pytest.mark.asyncio
    async def test_sigterm_drains_in_flight_requests_then_closes_database(self, make_settings):
        events: list = []
        entered: list = []
        release = asyncio.Event()
        database = FakeDatabase(connected=False, events=events)
        backend = BackendServer(
            make_settings(host="127.0.0.1", port=0, shutdown_drain_timeout=10),
            database=database,
            routers={"attendance": build_slow_router(events, entered, release)},
        )

        run_task = asyncio.create_task(backend.run())
        await wait_until(lambda: backend.server is not None and backend.server.started)
        port = backend.port

        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}", timeout=10) as client:
            requests = [asyncio.create_task(client.get("/api/attendance/slow")) for _ in range(3)]
            await wait_until(lambda: len(entered) == 3)

            backend.request_shutdown()
            assert backend.coordinator.state is ShutdownState.DRAINING

            # The listener closes while the three requests are still running
            deadline = asyncio.get_running_loop().time() + 5
            while not await port_refuses_connections(port):
                assert asyncio.get_running_loop().time() < deadline
                await asyncio.sleep(0.05)
            assert not run_task.done()
            assert "db_closed" not in events

            release.set()
            responses = await asyncio.gather(*requests)

        exit_code = await asyncio.wait_for(run_task, timeout=10)

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert all(r.json() == {"success": True} for r in responses)
        assert exit_code == 0
        assert events == ["db_connected", "request_done", "request_done", "request_done", "db_closed"]
        assert backend.coordinator.state is ShutdownState.TERMINATED

    @pytest.mark.asyncio
    async def test_serves_health_until_shutdown(self, make_settings):
        database = FakeDatabase(connected=False)
        backend = BackendServer(make_settings(host="127.0.0.1", port=0), database=database, routers={})

        run_task = asyncio.create_task(backend.run())
        await wait_until(lambda: backend.server is not None and backend.server.started)

        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{backend.port}") as client:
            response = await client.get("/api/health")

        backend.request_shutdown()
        exit_code = await asyncio.wait_for(run_task, timeout=10)

        assert response.status_code == 200
        assert response.json()["status"] == "OK"
        assert response.json()["database"] == "connected"
        assert exit_code == 0
        assert database.close_calls == 1


def test_main_exits_with_server_exit_code():
    backend = Mock()
    backend.run = AsyncMock(return_value=1)

    with patch.object(server_module, "BackendServer", return_value=backend), \
            patch.object(server_module, "setup_logging"):
        with pytest.raises(SystemExit) as exc_info:
            main()

    assert exc_info.value.code == 1
