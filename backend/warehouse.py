import io
import logging
import re
from contextlib import contextmanager

from google.api_core import exceptions as google_exceptions
from google.cloud import bigquery

from errors import SchemaMappingError, WarehouseLoadError, WarehouseTableMissingError, TransientIOError
from gcp import transient_google_errors
from processors import get_processor
from type_inference import INTEGER, FLOAT, DATE, BOOLEAN, STRING

logger = logging.getLogger(__name__)

TYPE_MAPPING = {
    INTEGER: 'INTEGER',
    FLOAT: 'FLOAT',
    DATE: 'DATE',
    BOOLEAN: 'BOOLEAN',
    STRING: 'STRING',
}

WRITE_TRUNCATE = 'WRITE_TRUNCATE'

# Rows rejected by REQUIRED columns are dropped instead of failing the load;
# the post-load row count reports them.
DEFAULT_MAX_BAD_RECORDS = 1000000

MAX_COLUMN_NAME_LENGTH = 300


@contextmanager
def warehouse_errors(action):
    """Transient failures become TransientIOError, any other API error WarehouseLoadError."""
    try:
        with transient_google_errors(action):
            yield
    except google_exceptions.GoogleAPICallError as e:
        raise WarehouseLoadError(f'{action} failed: {e}') from e


def sanitize_identifier(value):
    return re.sub(r'[^a-zA-Z0-9]', '_', str(value))


def warehouse_dataset_name(user_id):
    return f'user_{sanitize_identifier(user_id)}'


def warehouse_table_name(dataset_id):
    return f'dataset_{sanitize_identifier(dataset_id)}'


def _column_value(column, key):
    if isinstance(column, dict):
        return column.get(key)
    return getattr(column, key)


def _warehouse_column_name(name, position, used):
    cleaned = re.sub(r'[^a-zA-Z0-9_]', '_', str(name).strip())
    if not cleaned or cleaned.strip('_') == '':
        cleaned = f'column_{position + 1}'
    if cleaned[0].isdigit():
        cleaned = f'_{cleaned}'
    cleaned = cleaned[:MAX_COLUMN_NAME_LENGTH]

    candidate = cleaned
    suffix = 2
    while candidate.lower() in used:
        candidate = f'{cleaned}_{suffix}'
        suffix += 1
    used.add(candidate.lower())
    return candidate


def build_schema(columns):
    """Map ordered dataset columns to warehouse fields; unknown types raise SchemaMappingError."""
    schema = []
    used = set()
    for position, column in enumerate(columns):
        column_type = _column_value(column, 'type')
        warehouse_type = TYPE_MAPPING.get(column_type)
        if warehouse_type is None:
            raise SchemaMappingError(
                f"Column '{_column_value(column, 'name')}' has unmappable type '{column_type}'"
            )
        schema.append({
            'name': _warehouse_column_name(_column_value(column, 'name'), position, used),
            'type': warehouse_type,
            'mode': 'NULLABLE' if _column_value(column, 'nullable') else 'REQUIRED',
            'source_name': _column_value(column, 'name'),
        })
    return schema


class BigQueryWarehouse:
    """Thin wrapper over a BigQuery client built with an explicit project and location."""

    def __init__(self, project, location, key_file=None, client=None, job_timeout=300,
                 max_bad_records=DEFAULT_MAX_BAD_RECORDS):
        if client is None:
            if key_file:
                client = bigquery.Client.from_service_account_json(key_file, project=project, location=location)
            else:
                client = bigquery.Client(project=project, location=location)
        self.client = client
        self.project = project or client.project
        self.location = location
        self.job_timeout = job_timeout
        self.max_bad_records = max_bad_records

    def table_ref(self, dataset_name, table_name):
        return f'{self.project}.{dataset_name}.{table_name}'

    def dataset_exists(self, dataset_name):
        with warehouse_errors(f'Checking warehouse dataset {dataset_name}'):
            try:
                self.client.get_dataset(f'{self.project}.{dataset_name}')
            except google_exceptions.NotFound:
                return False
        return True

    def ensure_dataset(self, dataset_name):
        dataset = bigquery.Dataset(f'{self.project}.{dataset_name}')
        dataset.location = self.location
        with warehouse_errors(f'Creating warehouse dataset {dataset_name}'):
            self.client.create_dataset(dataset, exists_ok=True)

    def table_exists(self, dataset_name, table_name):
        with warehouse_errors(f'Checking warehouse table {table_name}'):
            try:
                self.client.get_table(self.table_ref(dataset_name, table_name))
            except google_exceptions.NotFound:
                return False
        return True

    def submit_load(self, dataset_name, table_name, csv_bytes, schema, write_disposition=WRITE_TRUNCATE):
        job_config = bigquery.LoadJobConfig(
            source_format=bigquery.SourceFormat.CSV,
            skip_leading_rows=1,
            allow_quoted_newlines=True,
            allow_jagged_rows=True,
            ignore_unknown_values=True,
            max_bad_records=self.max_bad_records,
            autodetect=False,
            create_disposition=bigquery.CreateDisposition.CREATE_IF_NEEDED,
            write_disposition=write_disposition,
            schema=[bigquery.SchemaField(f['name'], f['type'], mode=f['mode']) for f in schema],
        )
        with warehouse_errors(f'Submitting load job for {table_name}'):
            job = self.client.load_table_from_file(
                io.BytesIO(csv_bytes),
                self.table_ref(dataset_name, table_name),
                job_config=job_config,
                location=self.location,
            )
        return job.job_id

    def wait_for_load(self, job_id):
        """Block until the load job finishes; return its state and statistics."""
        with warehouse_errors(f'Waiting for load job {job_id}'):
            job = self.client.get_job(job_id, location=self.location)
            try:
                job.result(timeout=self.job_timeout)
            except google_exceptions.BadRequest as e:
                raise WarehouseLoadError(f'Load job {job_id} failed: {job.error_result or e}') from e
        return {
            'job_id': job_id,
            'state': job.state,
            'error_result': job.error_result,
            'errors': job.errors or [],
            'output_rows': job.output_rows,
        }

    def count_rows(self, dataset_name, table_name):
        query = f'SELECT COUNT(*) AS count FROM `{self.table_ref(dataset_name, table_name)}`'
        with warehouse_errors(f'Counting rows in {table_name}'):
            try:
                rows = self.client.query(query, location=self.location).result(timeout=self.job_timeout)
            except google_exceptions.NotFound as e:
                raise WarehouseTableMissingError(f'Warehouse table {table_name} does not exist') from e
            return int(next(iter(rows))['count'])

    def delete_table(self, dataset_name, table_name):
        with warehouse_errors(f'Deleting warehouse table {table_name}'):
            self.client.delete_table(self.table_ref(dataset_name, table_name), not_found_ok=True)


class WarehouseLoader:
    """Creates or replaces the warehouse table for a dataset."""

    def __init__(self, warehouse, storage):
        self.warehouse = warehouse
        self.storage = storage

    def create_or_replace_table(self, user_id, dataset_id, columns, source_location, file_type,
                                expected_row_count=None, source_bytes=None):
        """Load ``source_location`` into the dataset's table and verify the row count."""
        schema = build_schema(columns)
        dataset_name = warehouse_dataset_name(user_id)
        table_name = warehouse_table_name(dataset_id)

        if source_bytes is None:
            source_bytes = self.storage.download(source_location)
        csv_bytes = get_processor(file_type).to_warehouse_csv(source_bytes)

        self.warehouse.ensure_dataset(dataset_name)
        job_id = self.warehouse.submit_load(dataset_name, table_name, csv_bytes, schema, write_disposition=WRITE_TRUNCATE)
        logger.info("Warehouse load job %s started for %s.%s", job_id, dataset_name, table_name)

        job = self.warehouse.wait_for_load(job_id)
        if job.get('error_result'):
            raise WarehouseLoadError(f'Load job {job_id} failed: {job["error_result"]}')
        if job['errors']:
            logger.warning("Load job %s skipped %d bad records, first: %s",
                           job_id, len(job['errors']), job['errors'][0])

        output_rows = job['output_rows']
        verified_rows = self.verify_row_count(dataset_name, table_name, expected_row_count)

        return {
            'job_id': job_id,
            'table': self.warehouse.table_ref(dataset_name, table_name),
            'output_row_count': output_rows,
            'verified_row_count': verified_rows,
            'row_count_matches': expected_row_count is None or verified_rows == expected_row_count,
        }

    def verify_row_count(self, dataset_name, table_name, expected_row_count):
        try:
            verified_rows = self.warehouse.count_rows(dataset_name, table_name)
        except TransientIOError as e:
            logger.warning("Could not verify row count for %s.%s: %s", dataset_name, table_name, e)
            return None

        if expected_row_count is not None and verified_rows != expected_row_count:
            logger.warning(
                "Row count mismatch for %s.%s: expected %d, warehouse has %d",
                dataset_name, table_name, expected_row_count, verified_rows,
            )
        else:
            logger.info("Verified %d rows in %s.%s", verified_rows, dataset_name, table_name)
        return verified_rows

    def drop_table(self, user_id, dataset_id):
        self.warehouse.delete_table(warehouse_dataset_name(user_id), warehouse_table_name(dataset_id))


def create_warehouse(config):
    return BigQueryWarehouse(
        project=config.get('GCP_PROJECT_ID'),
        location=config.get('BIGQUERY_LOCATION', 'us-central1'),
        key_file=config.get('GCP_KEY_FILE'),
        job_timeout=config.get('WAREHOUSE_JOB_TIMEOUT', 300),
        max_bad_records=config.get('WAREHOUSE_MAX_BAD_RECORDS', DEFAULT_MAX_BAD_RECORDS),
    )
