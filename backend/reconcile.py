"""Reload a warehouse table that exists but holds no rows.

A load can finish at the orchestration layer and still leave the warehouse
table empty (for instance when the process dies mid-load). This script checks
one dataset and, only when its table is empty, loads the source file again
with the schema stored in DatasetColumn. Tables that already hold rows are
left alone.

Usage:
    python -m reconcile <dataset_id> [--create-missing]
"""

import argparse
import logging
import sys

from database import db, Dataset, find_active_job, get_dataset_columns
from errors import (
    DatasetNotFoundError, DuplicateJobError, IngestionError, ReconciliationSkipped, SchemaMappingError,
    SourceFileMissingError, WarehouseTableMissingError, short_message,
)
from warehouse import warehouse_dataset_name, warehouse_table_name

logger = logging.getLogger(__name__)


def _format_value(value):
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    text = str(value)
    if not text or any(c.isspace() for c in text) or '"' in text:
        return '"' + text.replace('"', '\\"') + '"'
    return text


def format_step(step, **fields):
    parts = [f'step={step}'] + [f'{key}={_format_value(value)}' for key, value in fields.items()]
    return ' '.join(parts)


def print_step(step, **fields):
    print(format_step(step, **fields), flush=True)


def reconcile_dataset(dataset_id, warehouse, loader, storage, create_missing=False, report=print_step):
    """Reload the dataset's warehouse table if it is empty.

    Raises ReconciliationSkipped when the table already has rows. Returns the
    loader result after a reload.
    """
    dataset = db.session.get(Dataset, dataset_id)
    if dataset is None:
        raise DatasetNotFoundError(f'Dataset with ID {dataset_id} not found in database')
    report('dataset_found', id=dataset.id, name=dataset.name, user=dataset.user_id, rows=dataset.row_count)
    if find_active_job(dataset.id):
        # The running job owns the table until it finishes
        raise DuplicateJobError(f'Dataset {dataset.id} is still being processed')

    dataset_name = warehouse_dataset_name(dataset.user_id)
    table_name = warehouse_table_name(dataset.id)

    dataset_exists = warehouse.dataset_exists(dataset_name)
    report('warehouse_dataset_exists', dataset=dataset_name, exists=dataset_exists)
    table_exists = dataset_exists and warehouse.table_exists(dataset_name, table_name)
    report('warehouse_table_exists', table=f'{dataset_name}.{table_name}', exists=table_exists)

    if table_exists:
        row_count = warehouse.count_rows(dataset_name, table_name)
    elif create_missing:
        row_count = 0
    else:
        raise WarehouseTableMissingError(f'Warehouse table {dataset_name}.{table_name} does not exist')
    report('row_count', count=row_count)

    if row_count > 0:
        logger.info("Table %s.%s already has %d rows; no reload needed", dataset_name, table_name, row_count)
        raise ReconciliationSkipped(row_count)

    source_exists = storage.exists(dataset.file_path)
    report('source_file_exists', path=dataset.file_path, exists=source_exists)
    if not source_exists:
        raise SourceFileMissingError(f'Source file does not exist: {dataset.file_path}')

    columns = get_dataset_columns(dataset.id)
    report('schema_columns', count=len(columns))
    if not columns:
        raise SchemaMappingError(f'No columns stored for dataset {dataset.id}')

    logger.info("Table %s.%s is empty; reloading from %s", dataset_name, table_name, dataset.file_path)
    result = loader.create_or_replace_table(
        dataset.user_id,
        dataset.id,
        columns,
        dataset.file_path,
        dataset.data_type,
        expected_row_count=dataset.row_count,
    )
    report('load_job_id', id=result['job_id'])
    report('post_load_row_count', count=result['verified_row_count'], expected=dataset.row_count,
           matches=result['row_count_matches'])
    return result


def main(argv=None, app=None):
    parser = argparse.ArgumentParser(description='Reload a warehouse table that has zero rows.')
    parser.add_argument('dataset_id', help='ID of the dataset to check')
    parser.add_argument('--create-missing', action='store_true',
                        help='treat a missing warehouse table as empty and load it')
    args = parser.parse_args(argv)

    if app is None:
        from app import create_app
        app = create_app(start_workers=False)

    with app.app_context():
        services = app.extensions['ingestion']
        try:
            reconcile_dataset(
                args.dataset_id,
                services['warehouse'],
                services['loader'],
                services['storage'],
                create_missing=args.create_missing,
            )
        except ReconciliationSkipped as e:
            print_step('result', status='skipped', count=e.row_count)
            return 0
        except IngestionError as e:
            print_step('result', status='error', error=e.__class__.__name__, message=short_message(e))
            return 1
        except Exception as e:
            logger.exception("Unexpected error reconciling dataset %s", args.dataset_id)
            print_step('result', status='error', error=e.__class__.__name__, message=short_message(e))
            return 1

    print_step('result', status='reloaded')
    return 0


if __name__ == '__main__':
    sys.exit(main())
