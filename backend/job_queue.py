"""Retrying task queue that drives dataset processing.

Workers pull tasks from a shared queue and run the handler registered for the
task's job type. The queue owns every Dataset / ProcessingJob status change:
handlers only do the work and raise typed errors, and the queue decides whether
to retry (transient errors, exponential backoff) or to fail the job.

At most one task per (dataset, job type) is active at a time; ``submit``
rejects a second one. Tasks live in memory only and are rebuilt from
ProcessingJob rows left in ``processing`` by ``recover``.
"""

import logging
import queue
import threading
import time
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from database import (
    db, Dataset, ProcessingJob, find_active_job,
    STATUS_AVAILABLE, STATUS_ERROR,
    WAREHOUSE_LOADED, WAREHOUSE_FAILED,
    JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED,
    JOB_TYPE_SCHEMA_EXTRACTION,
)
from errors import (
    DatasetNotFoundError, DuplicateJobError, IngestionError, TaskTimeoutError, WarehouseStageError,
    is_retryable, short_message,
)
from ingestion import PROGRESS_DONE

logger = logging.getLogger(__name__)

KEEP_METADATA = 'keep_metadata'
FAIL_DATASET = 'fail_dataset'
WAREHOUSE_FAILURE_POLICIES = (KEEP_METADATA, FAIL_DATASET)


class TaskHandle:
    def __init__(self, task_id, dataset_id, job_type):
        self.task_id = task_id
        self.dataset_id = dataset_id
        self.job_type = job_type


class QueueTask:
    """One unit of queued work; ``id`` is the ProcessingJob id."""

    def __init__(self, job_id, job_type, payload, attempts=0):
        self.id = job_id
        self.job_type = job_type
        self.payload = payload
        self.attempts = attempts
        self.progress = 0
        self.delays = []

    @property
    def key(self):
        return (self.payload['dataset_id'], self.job_type)

    def __repr__(self):
        return f"<QueueTask {self.id} {self.job_type} attempt={self.attempts}>"


def task_payload(dataset):
    return {
        'dataset_id': dataset.id,
        'user_id': dataset.user_id,
        'source_location': dataset.file_path,
        'file_type': dataset.data_type,
    }


class JobQueue:
    def __init__(self, app, max_attempts=3, backoff_base=5.0, task_timeout=900.0, cache=None,
                 warehouse_failure_policy=KEEP_METADATA, sleep=time.sleep, clock=time.monotonic):
        if warehouse_failure_policy not in WAREHOUSE_FAILURE_POLICIES:
            raise ValueError(f'Unknown warehouse failure policy: {warehouse_failure_policy}')
        self.app = app
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.task_timeout = task_timeout
        self.cache = cache
        self.warehouse_failure_policy = warehouse_failure_policy
        self._sleep = sleep
        self._clock = clock

        self._handlers = {}
        self._tasks = queue.Queue()
        self._lock = threading.Lock()
        self._active = {}
        self._by_id = {}
        self._workers = []
        self._stopping = threading.Event()

    # ==================== REGISTRATION / ENQUEUE ====================

    def register_handler(self, job_type, handler):
        if job_type in self._handlers:
            raise ValueError(f'Handler already registered for {job_type}')
        self._handlers[job_type] = handler

    def submit(self, dataset_id, user_id, source_location, file_type, job_type=JOB_TYPE_SCHEMA_EXTRACTION):
        """Enqueue a task unless one is already active for this dataset and job type."""
        if job_type not in self._handlers:
            raise ValueError(f'No handler registered for {job_type}')

        payload = {
            'dataset_id': dataset_id,
            'user_id': user_id,
            'source_location': source_location,
            'file_type': file_type,
        }

        with self._lock:
            with self.app.app_context():
                if (dataset_id, job_type) in self._active or find_active_job(dataset_id, job_type):
                    raise DuplicateJobError(f'A {job_type} job is already active for dataset {dataset_id}')
                if db.session.get(Dataset, dataset_id) is None:
                    raise DatasetNotFoundError(f'Dataset {dataset_id} not found')

                job = ProcessingJob(dataset_id=dataset_id, job_type=job_type, status=JOB_PROCESSING,
                                    progress=0, attempts=0)
                db.session.add(job)
                try:
                    db.session.commit()
                except IntegrityError as e:
                    # Another process inserted the active job first
                    db.session.rollback()
                    raise DuplicateJobError(
                        f'A {job_type} job is already active for dataset {dataset_id}'
                    ) from e
                task = QueueTask(job.id, job_type, payload)

            self._active[task.key] = task
            self._by_id[task.id] = task

        self._tasks.put(task)
        logger.info("Queued %s job %s for dataset %s", job_type, task.id, dataset_id)
        return TaskHandle(task.id, dataset_id, job_type)

    def recover(self):
        """Re-enqueue jobs left in ``processing`` by a previous process.

        Only the single worker process may call this: a job still running in
        another live process would be picked up a second time.
        """
        recovered = []
        with self._lock:
            with self.app.app_context():
                for job in ProcessingJob.query.filter_by(status=JOB_PROCESSING).all():
                    if job.id in self._by_id or job.job_type not in self._handlers:
                        continue
                    dataset = db.session.get(Dataset, job.dataset_id)
                    if dataset is None:
                        continue
                    attempts = min(job.attempts or 0, self.max_attempts - 1)
                    task = QueueTask(job.id, job.job_type, task_payload(dataset), attempts=attempts)
                    task.progress = job.progress or 0
                    self._active[task.key] = task
                    self._by_id[task.id] = task
                    recovered.append(task)

        for task in recovered:
            logger.info("Recovered %s job %s for dataset %s", task.job_type, task.id, task.payload['dataset_id'])
            self._tasks.put(task)
        return recovered

    # ==================== PROGRESS ====================

    def progress(self, task_id):
        task = self._by_id.get(task_id)
        if task is not None:
            return task.progress
        with self.app.app_context():
            job = db.session.get(ProcessingJob, task_id)
            return job.progress if job else None

    def is_active(self, dataset_id, job_type=JOB_TYPE_SCHEMA_EXTRACTION):
        with self._lock:
            return (dataset_id, job_type) in self._active

    def backoff_delay(self, attempt):
        """Delay before retry number ``attempt`` (1-based)."""
        return self.backoff_base * (2 ** (attempt - 1))

    def _set_progress(self, task, percent):
        if percent <= task.progress:
            return
        task.progress = percent
        job = db.session.get(ProcessingJob, task.id)
        if job is not None and (job.progress or 0) < percent:
            job.progress = percent
            db.session.commit()

    def _stage_reporter(self, task, deadline):
        def report(percent):
            if self._clock() > deadline:
                raise TaskTimeoutError(f'Task exceeded its {self.task_timeout:g}s time budget')
            self._set_progress(task, percent)
        return report

    # ==================== WORKERS ====================

    def start(self, workers=2):
        self.recover()
        self._stopping.clear()
        for i in range(workers):
            thread = threading.Thread(target=self._work_loop, name=f'ingestion-worker-{i}')
            thread.daemon = True
            thread.start()
            self._workers.append(thread)
        logger.info("Started %d queue workers", workers)

    def stop(self, timeout=None):
        self._stopping.set()
        for thread in self._workers:
            thread.join(timeout)
        self._workers = []

    def _work_loop(self):
        while not self._stopping.is_set():
            self.process_next(block=True, timeout=0.5)

    def process_next(self, block=False, timeout=None):
        """Run one queued task to completion. Returns it, or None if the queue was empty."""
        try:
            task = self._tasks.get(block=block, timeout=timeout)
        except queue.Empty:
            return None
        try:
            self._execute(task)
        except Exception as e:
            logger.exception("Job %s failed outside its handler", task.id)
            self._abort(task, e)
        finally:
            self._tasks.task_done()
        return task

    def drain(self):
        processed = []
        while True:
            task = self.process_next()
            if task is None:
                return processed
            processed.append(task)

    # ==================== EXECUTION ====================

    def _execute(self, task):
        handler = self._handlers[task.job_type]
        try:
            with self.app.app_context():
                self._mark_started(task)
                while True:
                    task.attempts += 1
                    self._record_attempt(task)
                    deadline = self._clock() + self.task_timeout
                    try:
                        outcome = handler(task, self._stage_reporter(task, deadline))
                    except Exception as e:
                        db.session.rollback()
                        if is_retryable(e) and task.attempts < self.max_attempts:
                            delay = self.backoff_delay(task.attempts)
                            task.delays.append(delay)
                            logger.warning(
                                "Job %s attempt %d/%d failed (%s); retrying in %.1fs",
                                task.id, task.attempts, self.max_attempts, short_message(e), delay,
                            )
                            self._sleep(delay)
                            continue
                        self._fail(task, e)
                        return
                    self._complete(task, outcome)
                    return
        finally:
            with self._lock:
                self._active.pop(task.key, None)
                self._by_id.pop(task.id, None)

    def _mark_started(self, task):
        job = db.session.get(ProcessingJob, task.id)
        if job is not None and job.started_at is None:
            job.started_at = datetime.utcnow()
            db.session.commit()

    def _record_attempt(self, task):
        job = db.session.get(ProcessingJob, task.id)
        if job is not None:
            job.attempts = task.attempts
            db.session.commit()

    def _complete(self, task, outcome, warehouse_error=None):
        dataset_id = task.payload['dataset_id']
        dataset = db.session.get(Dataset, dataset_id)
        job = db.session.get(ProcessingJob, task.id)
        if dataset is None or job is None:
            logger.warning("Dataset %s was removed while job %s ran", dataset_id, task.id)
            return

        dataset.row_count = outcome['row_count']
        dataset.column_count = outcome['column_count']
        dataset.file_size_bytes = outcome['file_size_bytes']
        dataset.status = STATUS_AVAILABLE
        dataset.error_message = None
        dataset.preview_available = True
        if warehouse_error is None:
            dataset.warehouse_status = WAREHOUSE_LOADED
            dataset.warehouse_error = None
        else:
            dataset.warehouse_status = WAREHOUSE_FAILED
            dataset.warehouse_error = short_message(warehouse_error)

        job.status = JOB_COMPLETED
        job.error_message = None
        job.completed_at = datetime.utcnow()
        job.progress = PROGRESS_DONE
        db.session.commit()
        task.progress = PROGRESS_DONE

        if warehouse_error is None:
            logger.info("Job %s completed: dataset %s available (%d rows, %d columns)",
                        task.id, dataset_id, outcome['row_count'], outcome['column_count'])
        else:
            logger.warning("Job %s completed without warehouse data for dataset %s: %s",
                           task.id, dataset_id, short_message(warehouse_error))
        self._invalidate(task)

    def _abort(self, task, error):
        with self.app.app_context():
            db.session.rollback()
            try:
                self._fail(task, error, keep_metadata=False)
            except Exception:
                db.session.rollback()
                logger.exception("Could not record the failure of job %s", task.id)

    def _fail(self, task, error, keep_metadata=True):
        if (keep_metadata and isinstance(error, WarehouseStageError)
                and self.warehouse_failure_policy == KEEP_METADATA):
            self._complete(task, error.outcome, warehouse_error=error.cause)
            return

        message = short_message(error)
        if isinstance(error, IngestionError):
            logger.error("Job %s failed: %s", task.id, message)
        else:
            logger.error("Job %s failed unexpectedly: %s", task.id, message, exc_info=error)

        dataset_id = task.payload['dataset_id']
        dataset = db.session.get(Dataset, dataset_id)
        if dataset is not None:
            dataset.status = STATUS_ERROR
            dataset.error_message = message
            if isinstance(error, WarehouseStageError):
                dataset.warehouse_status = WAREHOUSE_FAILED
                dataset.warehouse_error = message

        job = db.session.get(ProcessingJob, task.id)
        if job is not None:
            job.status = JOB_FAILED
            job.error_message = message
            job.completed_at = datetime.utcnow()
        db.session.commit()
        self._invalidate(task)

    def _invalidate(self, task):
        if self.cache is not None:
            self.cache.invalidate_dataset(task.payload['user_id'], task.payload['dataset_id'])
