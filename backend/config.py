import os


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    # Relational store
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///datasets.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Object storage
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND', 'local')
    GCS_BUCKET_NAME = os.environ.get('GCS_BUCKET_NAME', 'app-datasets')
    LOCAL_STORAGE_ROOT = os.environ.get('LOCAL_STORAGE_ROOT', 'uploads')

    # Warehouse
    GCP_PROJECT_ID = os.environ.get('GCP_PROJECT_ID')
    GCP_KEY_FILE = os.environ.get('GCP_KEY_FILE')
    BIGQUERY_LOCATION = os.environ.get('BIGQUERY_LOCATION', 'us-central1')
    WAREHOUSE_JOB_TIMEOUT = int(os.environ.get('WAREHOUSE_JOB_TIMEOUT', 300))
    WAREHOUSE_MAX_BAD_RECORDS = int(os.environ.get('WAREHOUSE_MAX_BAD_RECORDS', 1000000))
    # keep_metadata | fail_dataset
    WAREHOUSE_FAILURE_POLICY = os.environ.get('WAREHOUSE_FAILURE_POLICY', 'keep_metadata')

    # Job queue
    START_WORKERS = _env_bool('START_WORKERS', True)
    QUEUE_WORKERS = int(os.environ.get('QUEUE_WORKERS', 2))
    QUEUE_MAX_ATTEMPTS = int(os.environ.get('QUEUE_MAX_ATTEMPTS', 3))
    QUEUE_BACKOFF_BASE = float(os.environ.get('QUEUE_BACKOFF_BASE', 5))
    QUEUE_TASK_TIMEOUT = float(os.environ.get('QUEUE_TASK_TIMEOUT', 900))

    # File processing
    SAMPLE_ROW_LIMIT = int(os.environ.get('SAMPLE_ROW_LIMIT', 1000))
    PREVIEW_ROW_LIMIT = int(os.environ.get('PREVIEW_ROW_LIMIT', 1000))

    # Cache
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    CACHE_TTL_SECONDS = int(os.environ.get('CACHE_TTL_SECONDS', 300))

    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get('CORS_ORIGINS', 'http://localhost:3000,http://localhost:5000').split(',')
        if origin.strip()
    ]
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
