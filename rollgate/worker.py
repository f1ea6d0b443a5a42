"""
Temporal worker hosting the rolling restart workflow and its activities.
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Optional

from loguru import logger
from temporalio import workflow
from temporalio.client import Client
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.worker import Worker

# Use unsafe imports for temporal server start-dev compatibility
with workflow.unsafe.imports_passed_through():
    from .activities import CrateDBActivities
    from .workflows import RollingRestartWorkflow

DEFAULT_TEMPORAL_ADDRESS = "localhost:7233"
DEFAULT_TASK_QUEUE = "cratedb-rolling-restart"


class WorkerManager:
    """Manager for the Temporal worker."""

    def __init__(self, temporal_address: str = DEFAULT_TEMPORAL_ADDRESS, task_queue: str = DEFAULT_TASK_QUEUE):
        self.temporal_address = temporal_address
        self.task_queue = task_queue
        self.client: Optional[Client] = None
        self.worker: Optional[Worker] = None
        self.shutdown_event = asyncio.Event()

    async def connect(self) -> None:
        """Connect to Temporal server."""
        try:
            self.client = await Client.connect(self.temporal_address, data_converter=pydantic_data_converter)
        except Exception as e:
            logger.error(f"Failed to connect to Temporal server at {self.temporal_address}: {e}")
            raise
        logger.info(f"Connected to Temporal server at {self.temporal_address}")

    def create_worker(self) -> Worker:
        """Create the worker for the task queue."""
        if not self.client:
            raise RuntimeError("Client not connected. Call connect() first.")

        activities = CrateDBActivities()
        self.worker = Worker(
            self.client,
            task_queue=self.task_queue,
            workflows=[RollingRestartWorkflow],
            activities=[
                activities.discover_restart_plans,
                activities.read_cluster_health,
                activities.restart_member,
            ],
            max_concurrent_activities=5,
            max_concurrent_workflow_tasks=10,
        )
        logger.info(f"Worker created with task queue: {self.task_queue}")
        return self.worker

    def setup_signal_handlers(self) -> None:
        """Stop the worker on SIGINT and SIGTERM."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._request_shutdown, signum)

    def _request_shutdown(self, signum: int) -> None:
        logger.info(f"Received signal {signal.Signals(signum).name}, initiating shutdown...")
        self.shutdown_event.set()

    async def run(self) -> None:
        """Run the worker until shutdown is requested."""
        if not self.worker:
            raise RuntimeError("Worker not created. Call create_worker() first.")

        logger.info("Starting Temporal worker...")
        worker_task = asyncio.create_task(self.worker.run())
        shutdown_task = asyncio.create_task(self.shutdown_event.wait())
        try:
            done, _ = await asyncio.wait([worker_task, shutdown_task], return_when=asyncio.FIRST_COMPLETED)
            if shutdown_task in done:
                logger.info("Shutdown signal received, stopping worker...")
                await self.worker.shutdown()
            await worker_task
        finally:
            shutdown_task.cancel()
        logger.info("Worker stopped")

    @asynccontextmanager
    async def managed_worker(self):
        """Connect and create the worker for the lifetime of the block."""
        await self.connect()
        self.create_worker()
        try:
            yield self
        finally:
            self.client = None
            logger.info("Worker manager shutdown complete")


async def run_worker(temporal_address: str = DEFAULT_TEMPORAL_ADDRESS, task_queue: str = DEFAULT_TASK_QUEUE) -> None:
    """
    Run the Temporal worker until SIGINT or SIGTERM.

    Args:
        temporal_address: Temporal server address
        task_queue: Task queue name
    """
    logger.info(f"Starting rollgate worker on {temporal_address}, task queue {task_queue}")
    manager = WorkerManager(temporal_address, task_queue)
    manager.setup_signal_handlers()
    async with manager.managed_worker():
        await manager.run()
