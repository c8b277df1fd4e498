from flask import Flask, Blueprint, current_app, jsonify, request
from flask_cors import CORS
from datetime import datetime
import logging
import os

from cache import create_cache
from config import Config
from database import db, Dataset, ProcessingJob, JOB_TYPE_SCHEMA_EXTRACTION, find_active_job, get_dataset_columns
from errors import (
    IngestionError, DatasetNotFoundError, DuplicateJobError, ReconciliationSkipped,
    SourceFileMissingError, WarehouseTableMissingError, short_message,
)
from ingestion import SchemaExtractionHandler
from job_queue import JobQueue
from logging_config import setup_logging
from reconcile import reconcile_dataset
from storage import create_storage
from warehouse import WarehouseLoader, create_warehouse

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)

ERROR_STATUS_CODES = {
    DatasetNotFoundError: 404,
    SourceFileMissingError: 404,
    WarehouseTableMissingError: 404,
    DuplicateJobError: 409,
}

# ==================== HELPER FUNCTIONS ====================

def services():
    return current_app.extensions['ingestion']


def create_response(data, status=200):
    """Create standardized response"""
    return jsonify(data), status


def current_user_id():
    """Owning user, supplied by the authentication layer in front of this service"""
    return request.headers.get('X-User-Id')


def get_user_dataset(dataset_id, user_id):
    dataset = Dataset.query.filter_by(id=dataset_id, user_id=user_id).first()
    if dataset is None:
        raise DatasetNotFoundError(f'Dataset {dataset_id} not found')
    return dataset


@api.errorhandler(IngestionError)
def handle_ingestion_error(error):
    status = 500
    for error_class, code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_class):
            status = code
            break
    return create_response({'success': False, 'error': short_message(error)}, status)


@api.before_request
def require_user():
    if request.endpoint not in ('api.health_check',) and not current_user_id():
        return create_response({'success': False, 'error': 'Missing X-User-Id header'}, 400)

# ==================== API ROUTES ====================

@api.route('/health')
def health_check():
    """Health check endpoint"""
    return create_response({
        'status': 'healthy',
        'timestamp': datetime.utcnow().isoformat(),
    })


@api.route('/datasets', methods=['GET'])
def list_datasets():
    """List the current user's datasets"""
    user_id = current_user_id()

    def load():
        datasets = Dataset.query.filter_by(user_id=user_id).order_by(Dataset.created_at.desc()).all()
        return [d.to_dict() for d in datasets]

    return create_response({
        'success': True,
        'datasets': services()['cache'].get_or_compute(user_id, None, 'list', load),
    })


@api.route('/datasets/<dataset_id>', methods=['GET'])
def get_dataset(dataset_id):
    """Dataset status, polled by clients while processing runs"""
    user_id = current_user_id()
    dataset = services()['cache'].get_or_compute(
        user_id, dataset_id, 'detail',
        lambda: get_user_dataset(dataset_id, user_id).to_dict(),
    )
    return create_response({'success': True, 'dataset': dataset})


@api.route('/datasets/<dataset_id>/schema', methods=['GET'])
def get_dataset_schema(dataset_id):
    """Ordered column metadata"""
    user_id = current_user_id()

    def load():
        get_user_dataset(dataset_id, user_id)
        return [c.to_dict() for c in get_dataset_columns(dataset_id)]

    columns = services()['cache'].get_or_compute(user_id, dataset_id, 'schema', load)
    return create_response({'success': True, 'dataset_id': dataset_id, 'columns': columns})


@api.route('/datasets/<dataset_id>/process', methods=['POST'])
def process_dataset(dataset_id):
    """Queue schema extraction and warehouse loading for an uploaded dataset"""
    dataset = get_user_dataset(dataset_id, current_user_id())
    handle = services()['queue'].submit(dataset.id, dataset.user_id, dataset.file_path, dataset.data_type)
    return create_response({
        'success': True,
        'job_id': handle.task_id,
        'message': 'Processing started',
        'status_url': f'/jobs/{handle.task_id}',
    }, 202)


@api.route('/jobs/<job_id>', methods=['GET'])
def get_job_status(job_id):
    """Get status and progress of a processing job"""
    job = db.session.get(ProcessingJob, job_id)
    if job is None or job.dataset.user_id != current_user_id():
        return create_response({'success': False, 'error': 'Job not found'}, 404)

    job_data = job.to_dict()
    progress = services()['queue'].progress(job_id)
    if progress is not None:
        job_data['progress'] = max(progress, job.progress or 0)
    return create_response(job_data)


@api.route('/datasets/<dataset_id>', methods=['DELETE'])
def delete_dataset(dataset_id):
    """Delete a dataset, its columns, jobs and warehouse table"""
    user_id = current_user_id()
    dataset = get_user_dataset(dataset_id, user_id)
    if services()['queue'].is_active(dataset_id, JOB_TYPE_SCHEMA_EXTRACTION) or find_active_job(dataset_id):
        raise DuplicateJobError(f'Dataset {dataset_id} is still being processed')

    try:
        services()['loader'].drop_table(user_id, dataset_id)
    except IngestionError as e:
        logger.warning("Could not drop warehouse table for dataset %s: %s", dataset_id, e)

    db.session.delete(dataset)
    db.session.commit()
    services()['cache'].invalidate_dataset(user_id, dataset_id)

    return create_response({'success': True, 'message': 'Dataset deleted'})


@api.route('/datasets/<dataset_id>/reconcile', methods=['POST'])
def reconcile(dataset_id):
    """Reload the warehouse table if it holds no rows"""
    get_user_dataset(dataset_id, current_user_id())
    data = request.get_json(silent=True) or {}
    steps = []

    def record(step, **fields):
        steps.append({'step': step, **fields})

    try:
        result = reconcile_dataset(
            dataset_id,
            services()['warehouse'],
            services()['loader'],
            services()['storage'],
            create_missing=bool(data.get('create_missing')),
            report=record,
        )
    except ReconciliationSkipped as e:
        return create_response({'success': True, 'result': 'skipped', 'row_count': e.row_count, 'steps': steps})

    return create_response({
        'success': True,
        'result': 'reloaded',
        'job_id': result['job_id'],
        'row_count': result['verified_row_count'],
        'steps': steps,
    })

# ==================== APPLICATION FACTORY ====================

def create_app(config=None, storage=None, warehouse=None, redis_client=None, start_workers=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)

    setup_logging(app.config['LOG_LEVEL'])
    CORS(app, origins=app.config['CORS_ORIGINS'])

    db.init_app(app)
    with app.app_context():
        db.create_all()

    storage = storage or create_storage(app.config)
    warehouse = warehouse or create_warehouse(app.config)
    loader = WarehouseLoader(warehouse, storage)
    cache = create_cache(app.config, client=redis_client)

    job_queue = JobQueue(
        app,
        max_attempts=app.config['QUEUE_MAX_ATTEMPTS'],
        backoff_base=app.config['QUEUE_BACKOFF_BASE'],
        task_timeout=app.config['QUEUE_TASK_TIMEOUT'],
        cache=cache,
        warehouse_failure_policy=app.config['WAREHOUSE_FAILURE_POLICY'],
    )
    job_queue.register_handler(JOB_TYPE_SCHEMA_EXTRACTION, SchemaExtractionHandler(
        storage,
        loader,
        sample_row_limit=app.config['SAMPLE_ROW_LIMIT'],
        preview_row_limit=app.config['PREVIEW_ROW_LIMIT'],
    ))

    app.extensions['ingestion'] = {
        'storage': storage,
        'warehouse': warehouse,
        'loader': loader,
        'cache': cache,
        'queue': job_queue,
    }
    app.register_blueprint(api)

    @app.errorhandler(404)
    def not_found(error):
        return create_response({'error': 'Not found'}, 404)

    @app.errorhandler(500)
    def internal_error(error):
        return create_response({'error': 'Internal server error'}, 500)

    if start_workers is None:
        start_workers = app.config['START_WORKERS']
    if start_workers:
        job_queue.start(app.config['QUEUE_WORKERS'])

    return app

# ==================== MAIN EXECUTION ====================

if __name__ == '__main__':
    app = create_app()
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_ENV') == 'development'
    app.run(host='0.0.0.0', port=port, debug=debug, use_reloader=False)
