import logging

from database import db, DatasetColumn
from errors import IngestionError, WarehouseStageError
from processors import get_processor, DEFAULT_SAMPLE_ROW_LIMIT, DEFAULT_PREVIEW_ROW_LIMIT

logger = logging.getLogger(__name__)

# Progress reported at stage boundaries
PROGRESS_DOWNLOADED = 25
PROGRESS_PARSED = 50
PROGRESS_COLUMNS_PERSISTED = 75
PROGRESS_WAREHOUSE_LOADED = 90
PROGRESS_DONE = 100


def replace_columns(dataset_id, columns):
    """Delete the dataset's columns and insert ``columns`` in source order."""
    DatasetColumn.query.filter_by(dataset_id=dataset_id).delete(synchronize_session=False)
    for position, column in enumerate(columns):
        db.session.add(DatasetColumn(
            dataset_id=dataset_id,
            name=column['name'],
            type=column['type'],
            nullable=column['nullable'],
            position=position,
            description=column.get('description', ''),
        ))
    db.session.commit()


class SchemaExtractionHandler:
    def __init__(self, storage, loader, sample_row_limit=DEFAULT_SAMPLE_ROW_LIMIT,
                 preview_row_limit=DEFAULT_PREVIEW_ROW_LIMIT):
        self.storage = storage
        self.loader = loader
        self.sample_row_limit = sample_row_limit
        self.preview_row_limit = preview_row_limit

    def __call__(self, task, report_progress):
        payload = task.payload
        dataset_id = payload['dataset_id']

        logger.info("Downloading %s for dataset %s", payload['source_location'], dataset_id)
        file_bytes = self.storage.download(payload['source_location'])
        report_progress(PROGRESS_DOWNLOADED)

        processor = get_processor(
            payload['file_type'],
            sample_row_limit=self.sample_row_limit,
            preview_row_limit=self.preview_row_limit,
        )
        result = processor.process(file_bytes)
        report_progress(PROGRESS_PARSED)

        replace_columns(dataset_id, result['columns'])
        logger.info("Stored %d columns for dataset %s", len(result['columns']), dataset_id)
        report_progress(PROGRESS_COLUMNS_PERSISTED)

        outcome = {
            'row_count': result['row_count'],
            'column_count': len(result['columns']),
            'file_size_bytes': len(file_bytes),
            'warehouse': None,
        }

        try:
            outcome['warehouse'] = self.loader.create_or_replace_table(
                payload['user_id'],
                dataset_id,
                result['columns'],
                payload['source_location'],
                payload['file_type'],
                expected_row_count=result['row_count'],
                source_bytes=file_bytes,
            )
        except IngestionError as e:
            logger.error("Warehouse load failed for dataset %s: %s", dataset_id, e)
            raise WarehouseStageError(e, outcome) from e
        except Exception as e:
            logger.exception("Warehouse load failed unexpectedly for dataset %s", dataset_id)
            raise WarehouseStageError(e, outcome) from e

        report_progress(PROGRESS_WAREHOUSE_LOADED)
        return outcome
