import itertools
import threading

import pytest
from google.api_core import exceptions as google_exceptions
from sqlalchemy.exc import IntegrityError

from cache import make_key
from database import db, Dataset, ProcessingJob, get_dataset_columns, JOB_TYPE_SCHEMA_EXTRACTION
from errors import DuplicateJobError, DatasetNotFoundError, TransientIOError, WarehouseLoadError
from ingestion import SchemaExtractionHandler
import job_queue as job_queue_module
from job_queue import JobQueue, FAIL_DATASET

from conftest import signup_csv


class FlakyStorage:
    """Wraps a storage backend and fails the first ``failures`` downloads."""

    def __init__(self, storage, failures):
        self.storage = storage
        self.failures = failures
        self.downloads = 0

    def download(self, path):
        self.downloads += 1
        if self.downloads <= self.failures:
            raise TransientIOError('storage timed out')
        return self.storage.download(path)


def make_queue(app, services, storage=None, handler=None, **options):
    job_queue = JobQueue(app, cache=services['cache'], **options)
    if handler is None:
        handler = SchemaExtractionHandler(storage or services['storage'], services['loader'])
    job_queue.register_handler(JOB_TYPE_SCHEMA_EXTRACTION, handler)
    return job_queue


def submit(job_queue, app, dataset_id):
    with app.app_context():
        dataset = db.session.get(Dataset, dataset_id)
        args = (dataset.id, dataset.user_id, dataset.file_path, dataset.data_type)
    return job_queue.submit(*args)


def load_state(app, dataset_id, job_id):
    with app.app_context():
        dataset = db.session.get(Dataset, dataset_id).to_dict()
        job = db.session.get(ProcessingJob, job_id).to_dict()
        columns = [c.to_dict() for c in get_dataset_columns(dataset_id)]
    return dataset, job, columns


def test_csv_dataset_is_processed_end_to_end(app, services, warehouse, make_dataset):
    dataset_id = make_dataset(signup_csv())

    handle = submit(services['queue'], app, dataset_id)
    services['queue'].drain()

    dataset, job, columns = load_state(app, dataset_id, handle.task_id)
    assert [(c['name'], c['type'], c['nullable']) for c in columns] == [
        ('id', 'integer', False),
        ('name', 'string', True),
        ('signup_date', 'date', False),
    ]
    assert dataset['status'] == 'available'
    assert dataset['row_count'] == 100
    assert dataset['column_count'] == 3
    assert dataset['warehouse_status'] == 'loaded'
    assert job['status'] == 'completed'
    assert job['progress'] == 100
    assert job['attempts'] == 1
    assert warehouse.count_rows('user_user_1', f"dataset_{dataset_id.replace('-', '_')}") == 100


def test_second_submit_for_active_dataset_is_rejected(app, services, make_dataset):
    dataset_id = make_dataset(signup_csv())
    submit(services['queue'], app, dataset_id)

    with pytest.raises(DuplicateJobError):
        submit(services['queue'], app, dataset_id)

    services['queue'].drain()
    # Finished jobs no longer block a new run
    submit(services['queue'], app, dataset_id)


def test_concurrent_submits_create_one_job(app, services, make_dataset):
    dataset_id = make_dataset(signup_csv())
    barrier = threading.Barrier(2)
    results = []

    def worker():
        barrier.wait()
        try:
            submit(services['queue'], app, dataset_id)
            results.append('queued')
        except DuplicateJobError:
            results.append('duplicate')

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == ['duplicate', 'queued']
    with app.app_context():
        assert ProcessingJob.query.filter_by(dataset_id=dataset_id).count() == 1


def test_submit_for_unknown_dataset(services):
    with pytest.raises(DatasetNotFoundError):
        services['queue'].submit('missing', 'user-1', 'user-1/x.csv', 'csv')


def test_transient_failures_are_retried_with_backoff_then_fail(app, services, make_dataset):
    dataset_id = make_dataset(signup_csv())
    sleeps = []
    storage = FlakyStorage(services['storage'], failures=3)
    job_queue = make_queue(app, services, storage=storage, max_attempts=3, backoff_base=1, sleep=sleeps.append)

    handle = submit(job_queue, app, dataset_id)
    task = job_queue.process_next()

    assert sleeps == [1, 2]
    assert task.delays == [1, 2]
    dataset, job, _ = load_state(app, dataset_id, handle.task_id)
    assert job['status'] == 'failed'
    assert job['attempts'] == 3
    assert job['error_message'] == 'storage timed out'
    assert dataset['status'] == 'error'
    assert dataset['error_message'] == 'storage timed out'


def test_transient_failure_then_success(app, services, make_dataset):
    dataset_id = make_dataset(signup_csv())
    sleeps = []
    storage = FlakyStorage(services['storage'], failures=1)
    job_queue = make_queue(app, services, storage=storage, backoff_base=5, sleep=sleeps.append)

    handle = submit(job_queue, app, dataset_id)
    job_queue.drain()

    assert sleeps == [5]
    dataset, job, _ = load_state(app, dataset_id, handle.task_id)
    assert job['status'] == 'completed'
    assert job['attempts'] == 2
    assert dataset['status'] == 'available'


def test_parse_errors_are_not_retried(app, services, warehouse, make_dataset):
    dataset_id = make_dataset(b'name\n\xff\xfe\xfa\n', name='broken.csv')
    sleeps = []
    job_queue = make_queue(app, services, sleep=sleeps.append)

    handle = submit(job_queue, app, dataset_id)
    job_queue.drain()

    assert sleeps == []
    dataset, job, columns = load_state(app, dataset_id, handle.task_id)
    assert job['status'] == 'failed'
    assert job['attempts'] == 1
    assert dataset['status'] == 'error'
    assert dataset['error_message']
    assert columns == []
    assert warehouse.load_calls == []


def test_unsupported_file_type_fails_the_job(app, services, make_dataset):
    dataset_id = make_dataset(b'{}', name='data.json', data_type='json')

    handle = submit(services['queue'], app, dataset_id)
    services['queue'].drain()

    dataset, job, _ = load_state(app, dataset_id, handle.task_id)
    assert job['status'] == 'failed'
    assert 'Unsupported file type' in dataset['error_message']


def test_warehouse_failure_keeps_metadata_by_default(app, services, warehouse, make_dataset):
    dataset_id = make_dataset(signup_csv())
    warehouse.load_errors = [WarehouseLoadError('row 12: invalid DATE') for _ in range(3)]

    handle = submit(services['queue'], app, dataset_id)
    services['queue'].drain()

    dataset, job, columns = load_state(app, dataset_id, handle.task_id)
    assert len(warehouse.load_calls) == 3
    assert job['status'] == 'completed'
    assert dataset['status'] == 'available'
    assert dataset['row_count'] == 100
    assert dataset['warehouse_status'] == 'failed'
    assert dataset['warehouse_error'] == 'row 12: invalid DATE'
    assert len(columns) == 3


def test_warehouse_failure_can_fail_the_dataset(app, services, warehouse, make_dataset):
    dataset_id = make_dataset(signup_csv())
    warehouse.load_errors = [WarehouseLoadError('row 12: invalid DATE')]
    job_queue = make_queue(app, services, max_attempts=1, warehouse_failure_policy=FAIL_DATASET)

    handle = submit(job_queue, app, dataset_id)
    job_queue.drain()

    dataset, job, _ = load_state(app, dataset_id, handle.task_id)
    assert job['status'] == 'failed'
    assert dataset['status'] == 'error'
    assert dataset['warehouse_status'] == 'failed'
    assert dataset['error_message'] == 'row 12: invalid DATE'


def test_unknown_failure_policy_is_rejected(app):
    with pytest.raises(ValueError):
        JobQueue(app, warehouse_failure_policy='ignore')


def test_progress_never_moves_backwards(app, services, warehouse, make_dataset):
    dataset_id = make_dataset(signup_csv())
    warehouse.load_errors = [TransientIOError('backend unavailable')]
    inner = SchemaExtractionHandler(services['storage'], services['loader'])
    observed = []

    def handler(task, report_progress):
        def spy(percent):
            report_progress(percent)
            observed.append(task.progress)
        return inner(task, spy)

    job_queue = make_queue(app, services, handler=handler, backoff_base=0)
    handle = submit(job_queue, app, dataset_id)
    job_queue.drain()

    # First attempt stops after the columns stage; the retry reports 25/50/75 again
    assert observed == [25, 50, 75, 75, 75, 75, 90]
    _, job, _ = load_state(app, dataset_id, handle.task_id)
    assert job['progress'] == 100
    assert job_queue.progress(handle.task_id) == 100


def test_task_over_time_budget_times_out(app, services, make_dataset):
    dataset_id = make_dataset(signup_csv())
    clock = itertools.count(0, 1000)
    job_queue = make_queue(app, services, max_attempts=2, backoff_base=0, task_timeout=10,
                           clock=lambda: next(clock))

    handle = submit(job_queue, app, dataset_id)
    job_queue.drain()

    dataset, job, _ = load_state(app, dataset_id, handle.task_id)
    assert job['status'] == 'failed'
    assert job['attempts'] == 2
    assert 'time budget' in job['error_message']
    assert dataset['status'] == 'error'


def test_recover_requeues_unfinished_jobs(app, services, make_dataset):
    dataset_id = make_dataset(signup_csv())
    first = make_queue(app, services)
    handle = submit(first, app, dataset_id)

    # A fresh queue (new process) finds the job still in processing
    second = make_queue(app, services)
    recovered = second.recover()
    assert [task.id for task in recovered] == [handle.task_id]
    assert second.is_active(dataset_id)

    second.drain()
    dataset, job, _ = load_state(app, dataset_id, handle.task_id)
    assert job['status'] == 'completed'
    assert dataset['status'] == 'available'
    assert second.recover() == []


def test_rerun_replaces_columns(app, services, make_dataset):
    dataset_id = make_dataset(signup_csv())
    submit(services['queue'], app, dataset_id)
    services['queue'].drain()

    services['storage'].upload('user-1/signups.csv', b'email,score\na@example.com,1.5\n')
    handle = submit(services['queue'], app, dataset_id)
    services['queue'].drain()

    dataset, _, columns = load_state(app, dataset_id, handle.task_id)
    assert [(c['name'], c['type'], c['position']) for c in columns] == [
        ('email', 'string', 0),
        ('score', 'float', 1),
    ]
    assert dataset['row_count'] == 1


def test_finished_job_invalidates_cached_views(app, services, redis_client, make_dataset):
    dataset_id = make_dataset(signup_csv())
    cache = services['cache']
    cache.set(make_key('user-1', dataset_id, 'detail'), {'status': 'processing'})
    cache.set(make_key('user-1', None, 'list'), [{'id': dataset_id}])
    cache.set(make_key('user-2', None, 'list'), [])

    submit(services['queue'], app, dataset_id)
    services['queue'].drain()

    assert redis_client.get(make_key('user-1', dataset_id, 'detail')) is None
    assert redis_client.get(make_key('user-1', None, 'list')) is None
    assert redis_client.get(make_key('user-2', None, 'list')) is not None


def test_backoff_doubles(app):
    job_queue = JobQueue(app, backoff_base=5)
    assert [job_queue.backoff_delay(n) for n in (1, 2, 3)] == [5, 10, 20]


def test_rejected_warehouse_request_keeps_metadata(app, services, warehouse, make_dataset):
    dataset_id = make_dataset(signup_csv())
    warehouse.load_errors = [google_exceptions.Forbidden('Access Denied: dataset user_user_1')]

    handle = submit(services['queue'], app, dataset_id)
    services['queue'].drain()

    dataset, job, columns = load_state(app, dataset_id, handle.task_id)
    assert len(warehouse.load_calls) == 1
    assert job['status'] == 'completed'
    assert dataset['status'] == 'available'
    assert dataset['warehouse_status'] == 'failed'
    assert 'Access Denied' in dataset['warehouse_error']
    assert len(columns) == 3


def test_recovered_job_resumes_from_stored_progress(app, services, make_dataset):
    dataset_id = make_dataset(signup_csv())
    handle = submit(make_queue(app, services), app, dataset_id)
    with app.app_context():
        db.session.get(ProcessingJob, handle.task_id).progress = 75
        db.session.commit()

    inner = SchemaExtractionHandler(services['storage'], services['loader'])
    stored = []

    def handler(task, report_progress):
        def spy(percent):
            report_progress(percent)
            stored.append(db.session.get(ProcessingJob, task.id).progress)
        return inner(task, spy)

    second = make_queue(app, services, handler=handler)
    second.recover()
    assert second.progress(handle.task_id) == 75

    second.drain()

    assert stored == [75, 75, 75, 90]
    _, job, _ = load_state(app, dataset_id, handle.task_id)
    assert job['progress'] == 100


def test_worker_survives_failure_outside_the_handler(app, services, make_dataset):
    broken_id = make_dataset(signup_csv(), name='broken.csv')
    healthy_id = make_dataset(signup_csv(), name='healthy.csv')
    inner = SchemaExtractionHandler(services['storage'], services['loader'])

    def handler(task, report_progress):
        if task.payload['dataset_id'] == broken_id:
            # Missing every outcome field the queue needs to finish the job
            return {}
        return inner(task, report_progress)

    job_queue = make_queue(app, services, handler=handler)
    broken = submit(job_queue, app, broken_id)
    healthy = submit(job_queue, app, healthy_id)

    assert len(job_queue.drain()) == 2

    dataset, job, _ = load_state(app, broken_id, broken.task_id)
    assert job['status'] == 'failed'
    assert dataset['status'] == 'error'
    assert 'row_count' in job['error_message']
    assert not job_queue.is_active(broken_id)

    dataset, job, _ = load_state(app, healthy_id, healthy.task_id)
    assert job['status'] == 'completed'
    assert dataset['status'] == 'available'

    # The failed job no longer blocks a new one
    submit(job_queue, app, broken_id)


def test_active_job_index_rejects_a_second_processing_row(app, make_dataset):
    dataset_id = make_dataset(signup_csv())
    with app.app_context():
        for _ in range(2):
            db.session.add(ProcessingJob(dataset_id=dataset_id, job_type=JOB_TYPE_SCHEMA_EXTRACTION,
                                         status='processing', progress=0, attempts=0))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


def test_insert_race_with_another_process_is_a_duplicate(app, services, make_dataset, monkeypatch):
    dataset_id = make_dataset(signup_csv())
    submit(make_queue(app, services), app, dataset_id)

    # The other process's row is committed after this process checked for it
    monkeypatch.setattr(job_queue_module, 'find_active_job', lambda *args: None)
    with pytest.raises(DuplicateJobError):
        submit(make_queue(app, services), app, dataset_id)

    with app.app_context():
        assert ProcessingJob.query.filter_by(dataset_id=dataset_id).count() == 1
