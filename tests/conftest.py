import io
from datetime import date, timedelta

import fakeredis
import pandas as pd
import pytest

from app import create_app
from database import db, Dataset
from errors import WarehouseLoadError, WarehouseTableMissingError


class FakeWarehouse:
    """In-memory stand-in for BigQueryWarehouse that honours write dispositions."""

    project = 'test-project'

    def __init__(self, max_bad_records=1000000):
        self.max_bad_records = max_bad_records
        self.datasets = set()
        self.tables = {}
        self.jobs = {}
        self.load_calls = []
        self.load_errors = []
        self.count_offset = 0

    def table_ref(self, dataset_name, table_name):
        return f'{self.project}.{dataset_name}.{table_name}'

    def dataset_exists(self, dataset_name):
        return dataset_name in self.datasets

    def ensure_dataset(self, dataset_name):
        self.datasets.add(dataset_name)

    def table_exists(self, dataset_name, table_name):
        return (dataset_name, table_name) in self.tables

    def submit_load(self, dataset_name, table_name, csv_bytes, schema, write_disposition='WRITE_TRUNCATE'):
        self.load_calls.append({
            'dataset': dataset_name,
            'table': table_name,
            'schema': schema,
            'write_disposition': write_disposition,
        })
        if self.load_errors:
            raise self.load_errors.pop(0)

        rows, bad_records = self._count_loadable_rows(csv_bytes, schema)
        if bad_records > self.max_bad_records:
            raise WarehouseLoadError(f'{bad_records} rows have empty REQUIRED values')
        table = self.tables.setdefault((dataset_name, table_name), {'schema': schema, 'rows': 0})
        table['schema'] = schema
        if write_disposition == 'WRITE_TRUNCATE':
            table['rows'] = rows
        else:
            table['rows'] += rows

        job_id = f'job_{len(self.load_calls)}'
        errors = [{'reason': 'invalid', 'message': 'Missing required field'}] * bad_records
        self.jobs[job_id] = {
            'job_id': job_id, 'state': 'DONE', 'error_result': None, 'errors': errors, 'output_rows': rows,
        }
        return job_id

    def _count_loadable_rows(self, csv_bytes, schema):
        width = len(schema)
        frame = pd.read_csv(
            io.BytesIO(csv_bytes), header=None, skiprows=1, names=list(range(width)), dtype=str,
            keep_default_na=False, index_col=False, engine='python', on_bad_lines=lambda fields: fields[:width],
        ).fillna('')
        required = [i for i, field in enumerate(schema) if field['mode'] == 'REQUIRED']
        bad = frame[required].eq('').any(axis=1).sum() if required else 0
        return len(frame) - int(bad), int(bad)

    def wait_for_load(self, job_id):
        return dict(self.jobs[job_id])

    def count_rows(self, dataset_name, table_name):
        if (dataset_name, table_name) not in self.tables:
            raise WarehouseTableMissingError(f'{table_name} does not exist')
        return self.tables[(dataset_name, table_name)]['rows'] + self.count_offset

    def delete_table(self, dataset_name, table_name):
        self.tables.pop((dataset_name, table_name), None)

    def truncate(self, dataset_name, table_name):
        self.tables[(dataset_name, table_name)]['rows'] = 0


def signup_csv(rows=100, missing_name_row=50):
    """id,name,signup_date CSV with one row missing its name."""
    lines = ['id,name,signup_date']
    start = date(2024, 1, 1)
    for i in range(1, rows + 1):
        name = '' if i == missing_name_row else f'user{i}'
        lines.append(f'{i},{name},{(start + timedelta(days=i)).isoformat()}')
    return ('\n'.join(lines) + '\n').encode('utf-8')


@pytest.fixture
def warehouse():
    return FakeWarehouse()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis()


@pytest.fixture
def app(tmp_path, warehouse, redis_client):
    app = create_app(
        config={
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
            'STORAGE_BACKEND': 'local',
            'LOCAL_STORAGE_ROOT': str(tmp_path / 'storage'),
            'QUEUE_BACKOFF_BASE': 0,
            'LOG_LEVEL': 'WARNING',
        },
        warehouse=warehouse,
        redis_client=redis_client,
        start_workers=False,
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def services(app):
    return app.extensions['ingestion']


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_dataset(app, services):
    def _make(content, name='signups.csv', user_id='user-1', data_type='csv'):
        path = f'{user_id}/{name}'
        services['storage'].upload(path, content)
        with app.app_context():
            dataset = Dataset(user_id=user_id, name=name, data_type=data_type, file_path=path)
            db.session.add(dataset)
            db.session.commit()
            return dataset.id
    return _make
