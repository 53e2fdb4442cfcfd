"""
Purge Batch Job

Deletes every tracked server whose live panel name does not contain the
retention keyword. Runs as a background asyncio task:

    started -> processing -> completed | failed

Snapshots are fetched and deletions run in batches of ``batch_size``; batch
N+1 never starts before every call of batch N has resolved, and progress is
persisted after each batch so the status endpoint can be polled.
"""
import asyncio
from typing import Dict, List, Optional, Set
import logging

from common.error_handling import NotFound, ValidationError, RemoteError, RemoteNotFoundError
from common.result import Ok, Err, Result
from common.schemas import PurgeJobOut, PurgeProgress
from common.settings import settings
from common.tracing import purge_tracer
from ledger_service.models import PurgeJob, ServerRecord, utcnow
from ledger_service.store import RecordStore
from panel_client.client import PanelClient
from server_service.orchestrator import DeprovisionOrchestrator

logger = logging.getLogger(__name__)

TERMINAL = ("completed", "failed")

PROTECTED, CANDIDATE, UNREADABLE = "protected", "candidate", "unreadable"

def batched(items: List, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]

def job_out(job: PurgeJob) -> PurgeJobOut:
    return PurgeJobOut(
        id=job.id,
        status=job.status,
        keywords=job.keywords,
        batch_size=job.batch_size,
        total_servers=job.total_servers,
        protected_count=job.protected_count,
        candidate_count=job.candidate_count,
        processed_count=job.processed_count,
        deleted_count=job.deleted_count,
        failed_count=job.failed_count,
        created_at=job.created_at.isoformat() if job.created_at else None,
        completed_at=job.completed_at.isoformat() if job.completed_at else None,
        error_message=job.error_message,
        progress=PurgeProgress(
            processed=job.processed_count,
            deleted=job.deleted_count,
            failed=job.failed_count,
            total=job.total_servers,
        ),
    )

class JobCancelled(Exception):
    pass

class PurgeJobRunner:
    def __init__(self, store: RecordStore, deprovisioner: DeprovisionOrchestrator, panel: PanelClient):
        self.store = store
        self.deprovisioner = deprovisioner
        self.panel = panel
        self._tasks: Dict[int, asyncio.Task] = {}
        self._cancelled: Set[int] = set()

    async def start(self, keywords: str, batch_size: Optional[int] = None,
                    user_id: Optional[int] = None) -> Result:
        """Create the job, enumerate the records and hand the rest to a background task"""
        if keywords is None or not keywords.strip():
            return Err(ValidationError("keywords", "must not be blank"))
        if batch_size is None:
            batch_size = settings.purge_batch_size
        if not 1 <= batch_size <= settings.purge_max_batch_size:
            return Err(ValidationError("batch_size", f"must be between 1 and {settings.purge_max_batch_size}"))

        job = self.store.create_purge_job(user_id, keywords, batch_size)
        logger.info(f"Purge job {job.id} started by {user_id}: keep servers matching {keywords!r}")
        try:
            records = self.store.find_all_server_records()
        except Exception as e:
            logger.exception(f"Purge job {job.id} could not enumerate servers")
            job = self._finish(job.id, "failed", error_message=f"enumeration failed: {e}")
            return Ok(job)

        job = self.store.update_purge_job(job.id, total_servers=len(records), status="processing")
        task = asyncio.create_task(self.run(job.id, records, keywords, batch_size))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))
        return Ok(job)

    async def wait(self, job_id: int):
        task = self._tasks.get(job_id)
        if task is not None:
            await task

    def status(self, job_id: int) -> Result:
        job = self.store.get_purge_job(job_id)
        if job is None:
            return Err(NotFound("purge job", job_id))
        return Ok(job_out(job))

    def cancel(self, job_id: int) -> Result:
        """Stop the job before its next batch; the batch in flight always finishes"""
        job = self.store.get_purge_job(job_id)
        if job is None:
            return Err(NotFound("purge job", job_id))
        if job.status in TERMINAL:
            return Err(ValidationError("job_id", f"purge job {job_id} already {job.status}"))
        self._cancelled.add(job_id)
        logger.info(f"Purge job {job_id} cancellation requested")
        return Ok(job_out(job))

    def recover_interrupted(self) -> List[int]:
        """Fail jobs left unfinished by a previous process, whose tasks died with it"""
        interrupted = []
        for job in self.store.find_unfinished_purge_jobs():
            if job.id in self._tasks:
                continue
            self._finish(job.id, "failed", error_message="interrupted")
            logger.warning(f"Purge job {job.id} was interrupted after {job.processed_count} processed, marked failed")
            interrupted.append(job.id)
        return interrupted

    def _check_cancelled(self, job_id: int):
        if job_id in self._cancelled:
            raise JobCancelled()

    def _finish(self, job_id: int, status: str, error_message: str = None) -> PurgeJob:
        self._cancelled.discard(job_id)
        return self.store.update_purge_job(job_id, status=status, completed_at=utcnow(),
                                           error_message=error_message)

    async def _classify(self, record: ServerRecord, keywords: str) -> str:
        try:
            snapshot = await self.panel.get_instance(record.server_id)
        except RemoteNotFoundError:
            # Gone from the panel already; the delete saga's 404 path clears the record
            return CANDIDATE
        except RemoteError as e:
            logger.warning(f"Purge could not read panel server {record.server_id}, leaving it alone: {e}")
            return UNREADABLE
        return PROTECTED if keywords in snapshot.name else CANDIDATE

    async def _delete(self, record: ServerRecord) -> bool:
        try:
            result = await self.deprovisioner.delete(record.id)
        except Exception:
            logger.exception(f"Purge delete of server {record.id} crashed")
            return False
        if not result.ok:
            logger.warning(f"Purge delete of server {record.id} failed: {result.error}")
        return result.ok

    async def run(self, job_id: int, records: List[ServerRecord], keywords: str, batch_size: int):
        with purge_tracer.start_span("purge.run") as span:
            span.add_tag("job_id", job_id)
            counts = {"protected_count": 0, "candidate_count": 0, "processed_count": 0,
                      "deleted_count": 0, "failed_count": 0}
            try:
                candidates = []
                for batch in batched(records, batch_size):
                    self._check_cancelled(job_id)
                    verdicts = await asyncio.gather(*(self._classify(r, keywords) for r in batch))
                    for record, verdict in zip(batch, verdicts):
                        if verdict == CANDIDATE:
                            candidates.append(record)
                            counts["candidate_count"] += 1
                        elif verdict == PROTECTED:
                            counts["protected_count"] += 1
                        else:
                            counts["processed_count"] += 1
                            counts["failed_count"] += 1
                    self.store.update_purge_job(job_id, **counts)

                logger.info(f"Purge job {job_id}: {counts['candidate_count']} to delete, "
                            f"{counts['protected_count']} protected")

                for batch in batched(candidates, batch_size):
                    self._check_cancelled(job_id)
                    outcomes = await asyncio.gather(*(self._delete(r) for r in batch))
                    deleted = sum(1 for ok in outcomes if ok)
                    counts["processed_count"] += len(batch)
                    counts["deleted_count"] += deleted
                    counts["failed_count"] += len(batch) - deleted
                    self.store.update_purge_job(job_id, **counts)
                    logger.info(f"Purge job {job_id}: {counts['processed_count']} processed, "
                                f"{counts['deleted_count']} deleted, {counts['failed_count']} failed")

                self._finish(job_id, "completed")
                logger.info(f"Purge job {job_id} completed")
            except JobCancelled:
                logger.warning(f"Purge job {job_id} cancelled after {counts['processed_count']} processed")
                self._finish_failed(job_id, "cancelled")
            except Exception as e:
                span.set_error(e)
                logger.exception(f"Purge job {job_id} failed")
                self._finish_failed(job_id, str(e)[:1000])

    def _finish_failed(self, job_id: int, error_message: str):
        try:
            self._finish(job_id, "failed", error_message=error_message)
        except Exception:
            # Left non-terminal; recover_interrupted fails it on the next start
            logger.exception(f"Purge job {job_id} could not be marked failed")
