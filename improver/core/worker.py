"""Poll loop that hands queued jobs to the pipeline.

Every tick fetches PENDING and RETRY jobs oldest first and tries to take the
repository lock for each. Pipelines run as background tasks, bounded by a
semaphore; a job that finds its repository busy or no free slot simply
waits for a later tick.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime

import structlog

from improver.core.job import ImprovementJob, utcnow
from improver.core.lock import make_branch_name
from improver.core.pipeline import JobPipeline
from improver.core.ports import JobStore

logger = structlog.get_logger()


class PollLoop:
    def __init__(
        self,
        store: JobStore,
        pipeline: JobPipeline,
        poll_interval: float = 5.0,
        max_concurrent_jobs: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.pipeline = pipeline
        self.poll_interval = poll_interval
        self.max_concurrent_jobs = max_concurrent_jobs
        self.clock = clock
        self._slots = asyncio.Semaphore(max_concurrent_jobs)
        self._polling = False
        self._stopping = asyncio.Event()
        self._ticks: set[asyncio.Task] = set()
        self._pipelines: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        """Number of pipelines currently running."""
        return len(self._pipelines)

    async def poll_once(self) -> list[str]:
        """One tick. Returns the ids of the jobs dispatched.

        A tick that starts while another is still in flight does nothing.
        """
        if self._polling:
            logger.debug("Previous poll still in flight, skipping tick")
            return []

        self._polling = True
        dispatched: list[str] = []
        try:
            try:
                candidates = await asyncio.to_thread(self.store.list_executable)
            except Exception as e:
                logger.error("Failed to fetch executable jobs", error=str(e))
                return dispatched

            for job in candidates:
                if self._stopping.is_set():
                    break
                if self._slots.locked():
                    logger.debug("No free pipeline slot, deferring", waiting=len(candidates) - len(dispatched))
                    break
                try:
                    if await self._dispatch(job):
                        dispatched.append(job.id)
                except Exception as e:
                    logger.error("Failed to dispatch job", job_id=job.id, error=str(e))
        finally:
            self._polling = False

        if dispatched:
            logger.info("Dispatched jobs", count=len(dispatched), in_flight=self.in_flight)
        return dispatched

    async def _dispatch(self, job: ImprovementJob) -> bool:
        branch_name = make_branch_name(job.file_path, self.clock())
        await self._slots.acquire()
        try:
            running = await asyncio.to_thread(self.store.try_acquire_lock, job.id, branch_name)
        except BaseException:
            self._slots.release()
            raise

        if running is None:
            logger.debug("Repository busy, job stays queued", job_id=job.id, repository=job.repository_id)
            self._slots.release()
            return False

        # The lock is held from here on; the pipeline is the only way out of RUNNING.
        task = asyncio.create_task(self._run_pipeline(running), name=f"pipeline-{job.id}")
        self._pipelines.add(task)
        task.add_done_callback(self._pipelines.discard)
        return True

    async def _run_pipeline(self, job: ImprovementJob) -> None:
        try:
            await self.pipeline.execute(job)
        except Exception:
            logger.exception("Pipeline crashed", job_id=job.id)
        finally:
            self._slots.release()

    def _tick(self) -> None:
        task = asyncio.create_task(self.poll_once())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def run(self) -> None:
        """Tick every ``poll_interval`` seconds until ``stop()`` is called."""
        logger.info(
            "Worker started",
            poll_interval=self.poll_interval,
            max_concurrent_jobs=self.max_concurrent_jobs,
        )
        while not self._stopping.is_set():
            self._tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker stopped polling")

    def stop(self) -> None:
        self._stopping.set()

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for the in-flight tick and pipelines to finish."""
        # A finishing tick can still dispatch pipelines, so loop until both sets are empty.
        while True:
            pending = {task for task in self._ticks | self._pipelines if not task.done()}
            if not pending:
                return
            logger.info("Waiting for in-flight pipelines", count=len(self._pipelines))
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            if still_running:
                logger.warning("Pipelines still running after drain timeout", count=len(still_running))
                return
