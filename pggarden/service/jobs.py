"""Background worker that delivers queued account notifications.

Identity operations enqueue jobs inside their own unit of work, so a job
only exists once the change that produced it has committed. This worker
claims pending jobs and turns them into emails or audit log entries.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from pggarden.logging import get_logger
from pggarden.storage.models import Job

if TYPE_CHECKING:
    from pggarden.service.email import EmailService
    from pggarden.service.identity import IdentityService
    from pggarden.storage.memory import MemoryStore
    from pggarden.storage.postgres import PostgresStore

logger = get_logger(__name__)

TASK_AUDIT = "user__audit"
TASK_FORGOT_PASSWORD = "user__forgot_password"
TASK_FORGOT_PASSWORD_UNREGISTERED = "user__forgot_password_unregistered_email"
TASK_DELETE_ACCOUNT = "user__send_delete_account_email"
TASK_SEND_VERIFICATION = "user_emails__send_verification"

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_ATTEMPTS = 5


class JobWorker:
    """Polls the job table and dispatches each task to its handler."""

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        identity: "IdentityService",
        email: "EmailService",
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.store = store
        self.identity = identity
        self.email = email
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[bool]]] = {
            TASK_AUDIT: self._handle_audit,
            TASK_FORGOT_PASSWORD: self._handle_forgot_password,
            TASK_FORGOT_PASSWORD_UNREGISTERED: self._handle_unregistered_reset,
            TASK_DELETE_ACCOUNT: self._handle_delete_account,
            TASK_SEND_VERIFICATION: self._handle_send_verification,
        }

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("job_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("job_worker_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("job_worker_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "job_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(300, self.poll_interval * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "job_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.poll_interval)

    async def run_once(self) -> int:
        """Claim and process one batch; returns the number of jobs handled."""
        jobs: List[Job] = await asyncio.to_thread(self.store.claim_jobs, self.batch_size)
        for job in jobs:
            await self._process(job)
        return len(jobs)

    async def _process(self, job: Job) -> None:
        handler = self._handlers.get(job.task)
        if handler is None:
            logger.error("job_unknown_task", job_id=job.id, task=job.task)
            await asyncio.to_thread(self.store.complete_job, job.id)
            return

        try:
            delivered = await handler(job.payload)
            error = None if delivered else "delivery failed"
        except (KeyError, TypeError) as exc:
            logger.error("job_payload_invalid", job_id=job.id, task=job.task, error=str(exc))
            await asyncio.to_thread(self.store.complete_job, job.id)
            return

        if error is None:
            await asyncio.to_thread(self.store.complete_job, job.id)
            return

        if job.attempts >= self.max_attempts:
            logger.error("job_dropped", job_id=job.id, task=job.task, attempts=job.attempts)
            await asyncio.to_thread(self.store.complete_job, job.id)
            return
        logger.warning("job_failed", job_id=job.id, task=job.task, attempts=job.attempts)
        await asyncio.to_thread(self.store.fail_job, job.id, error)

    async def _handle_audit(self, payload: Dict[str, Any]) -> bool:
        logger.info(
            "user_audit",
            audit_type=payload["type"],
            user_id=payload.get("user_id"),
            current_user_id=payload.get("current_user_id"),
            extra1=payload.get("extra1"),
            extra2=payload.get("extra2"),
        )
        return True

    async def _handle_forgot_password(self, payload: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(
            self.email.send_password_reset, payload["email"], payload["id"], payload["token"]
        )

    async def _handle_unregistered_reset(self, payload: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(self.email.send_unregistered_reset_notice, payload["email"])

    async def _handle_delete_account(self, payload: Dict[str, Any]) -> bool:
        return await asyncio.to_thread(
            self.email.send_delete_account, payload["email"], payload["token"]
        )

    async def _handle_send_verification(self, payload: Dict[str, Any]) -> bool:
        details = await asyncio.to_thread(self.identity.prepare_verification_email, payload["id"])
        if details is None:
            # Already verified or removed
            return True
        return await asyncio.to_thread(
            self.email.send_email_verification,
            details["email"],
            details["email_id"],
            details["token"],
        )
