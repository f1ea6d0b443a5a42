"""
Temporal client for submitting and controlling rolling restart runs.
"""

import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from temporalio import workflow
from temporalio.client import Client, WorkflowExecutionStatus, WorkflowFailureError, WorkflowHandle
from temporalio.common import RetryPolicy
from temporalio.contrib.pydantic import pydantic_data_converter

from .models import ClusterPlan, MultiClusterRestartResult, RestartOptions, RollingRestartInput

# Use unsafe imports for temporal server start-dev compatibility
with workflow.unsafe.imports_passed_through():
    from .worker import DEFAULT_TASK_QUEUE, DEFAULT_TEMPORAL_ADDRESS
    from .workflows import RollingRestartWorkflow

STATUS_NAMES = {
    WorkflowExecutionStatus.RUNNING: "Running",
    WorkflowExecutionStatus.COMPLETED: "Completed",
    WorkflowExecutionStatus.FAILED: "Failed",
    WorkflowExecutionStatus.CANCELED: "Canceled",
    WorkflowExecutionStatus.TERMINATED: "Terminated",
    WorkflowExecutionStatus.CONTINUED_AS_NEW: "Continued",
    WorkflowExecutionStatus.TIMED_OUT: "Timed Out",
}


def format_workflow_status(status: Optional[WorkflowExecutionStatus]) -> str:
    """Readable name of a workflow execution status."""
    if status is None:
        return "Unknown"
    return STATUS_NAMES.get(status, status.name.replace("_", " ").title())


class TemporalClient:
    """Client for running rolling restarts as Temporal workflows."""

    def __init__(self, temporal_address: str = DEFAULT_TEMPORAL_ADDRESS, task_queue: str = DEFAULT_TASK_QUEUE):
        self.temporal_address = temporal_address
        self.task_queue = task_queue
        self.client: Optional[Client] = None

    async def connect(self) -> None:
        """Connect to Temporal server."""
        try:
            self.client = await Client.connect(self.temporal_address, data_converter=pydantic_data_converter)
        except Exception as e:
            logger.error(f"Failed to connect to Temporal server at {self.temporal_address}: {e}")
            raise
        logger.info(f"Connected to Temporal server at {self.temporal_address}")

    async def disconnect(self) -> None:
        """Disconnect from Temporal server."""
        if self.client:
            self.client = None
            logger.info("Disconnected from Temporal server")

    def _require_client(self) -> Client:
        if not self.client:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self.client

    async def restart_clusters(
        self, options: RestartOptions, wait_for_completion: bool = True
    ) -> Union[MultiClusterRestartResult, WorkflowHandle]:
        """
        Submit a rolling restart.

        Args:
            options: Restart options
            wait_for_completion: Whether to wait for the summary

        Returns:
            MultiClusterRestartResult, or the WorkflowHandle if not waiting
        """
        client = self._require_client()
        workflow_id = f"rolling-restart-{uuid.uuid4().hex[:8]}"
        execution_timeout = timedelta(seconds=options.run_timeout + 300) if options.run_timeout else None

        handle = await client.start_workflow(
            RollingRestartWorkflow.run,
            RollingRestartInput(options=options),
            id=workflow_id,
            task_queue=self.task_queue,
            execution_timeout=execution_timeout,
            # Don't retry the entire workflow
            retry_policy=RetryPolicy(maximum_attempts=1),
        )
        logger.info(f"Started rolling restart workflow: {workflow_id}")
        if not wait_for_completion:
            return handle

        try:
            result = await handle.result()
        except WorkflowFailureError as e:
            logger.error(f"Rolling restart workflow {workflow_id} failed: {e.cause or e}")
            raise
        logger.info(
            f"Rolling restart completed: {result.successful_clusters} completed, "
            f"{result.failed_clusters} abandoned out of {result.total_clusters} clusters"
        )
        return result

    async def get_workflow_status(self, workflow_id: str) -> Dict[str, Any]:
        """
        Get the status of a workflow and, while it is running, its restart plans.

        Args:
            workflow_id: Workflow ID

        Returns:
            Dictionary with workflow status information
        """
        handle = self._require_client().get_workflow_handle(workflow_id)
        description = await handle.describe()

        plans: List[ClusterPlan] = []
        if description.status == WorkflowExecutionStatus.RUNNING:
            plans = await handle.query(RollingRestartWorkflow.plan)

        return {
            "workflow_id": workflow_id,
            "status": format_workflow_status(description.status),
            "run_id": description.run_id,
            "start_time": description.start_time,
            "close_time": description.close_time,
            "task_queue": description.task_queue,
            "workflow_type": description.workflow_type,
            "plans": plans,
        }

    async def cancel_workflow(self, workflow_id: str, reason: str = "operator request") -> None:
        """
        Ask a running restart to stop.

        The cancel signal lets the active health gate exit cleanly, so the
        workflow still returns a summary.
        """
        handle = self._require_client().get_workflow_handle(workflow_id)
        await handle.signal(RollingRestartWorkflow.cancel, reason)
        logger.info(f"Sent cancel signal to workflow {workflow_id}: {reason}")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
