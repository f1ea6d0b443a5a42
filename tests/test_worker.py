"""
Tests for the Temporal worker manager.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from rollgate.worker import DEFAULT_TASK_QUEUE, WorkerManager
from rollgate.workflows import RollingRestartWorkflow


class TestWorkerManager:
    def setup_method(self):
        self.manager = WorkerManager("localhost:7233", "test-queue")

    def test_defaults(self):
        assert WorkerManager().task_queue == DEFAULT_TASK_QUEUE

    def test_create_worker_requires_connection(self):
        with pytest.raises(RuntimeError, match="not connected"):
            self.manager.create_worker()

    @pytest.mark.asyncio
    async def test_run_requires_worker(self):
        with pytest.raises(RuntimeError, match="not created"):
            await self.manager.run()

    def test_create_worker_registers_workflow_and_activities(self):
        self.manager.client = Mock()
        with patch("rollgate.worker.Worker") as worker_cls:
            self.manager.create_worker()

        kwargs = worker_cls.call_args.kwargs
        assert kwargs["task_queue"] == "test-queue"
        assert kwargs["workflows"] == [RollingRestartWorkflow]
        names = [activity.__name__ for activity in kwargs["activities"]]
        assert names == ["discover_restart_plans", "read_cluster_health", "restart_member"]

    @pytest.mark.asyncio
    async def test_shutdown_event_stops_worker(self):
        stopped = asyncio.Event()
        worker = Mock()
        worker.run = AsyncMock(side_effect=stopped.wait)

        async def shutdown():
            stopped.set()

        worker.shutdown = AsyncMock(side_effect=shutdown)
        self.manager.worker = worker

        task = asyncio.create_task(self.manager.run())
        await asyncio.sleep(0)
        self.manager._request_shutdown(2)
        await asyncio.wait_for(task, 1)

        worker.shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_managed_worker_connects_and_releases_client(self):
        with patch("rollgate.worker.Client.connect", AsyncMock(return_value=Mock())) as connect, patch(
            "rollgate.worker.Worker"
        ):
            async with self.manager.managed_worker() as manager:
                assert manager.client is not None
                assert manager.worker is not None

        assert connect.await_args.args == ("localhost:7233",)
        assert self.manager.client is None
