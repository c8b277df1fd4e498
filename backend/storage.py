import logging
import os

from google.api_core import exceptions as google_exceptions
from google.cloud import storage as gcs
from werkzeug.security import safe_join

from errors import SourceFileMissingError
from gcp import transient_google_errors

logger = logging.getLogger(__name__)


class GCSStorage:

    def __init__(self, bucket_name, project=None, key_file=None, client=None):
        if client is None:
            if key_file:
                client = gcs.Client.from_service_account_json(key_file, project=project)
            else:
                client = gcs.Client(project=project)
        self.client = client
        self.bucket_name = bucket_name
        self.bucket = client.bucket(bucket_name)

    def exists(self, path):
        with transient_google_errors(f'Checking gs://{self.bucket_name}/{path}'):
            return self.bucket.blob(path).exists()

    def download(self, path):
        try:
            with transient_google_errors(f'Downloading gs://{self.bucket_name}/{path}'):
                return self.bucket.blob(path).download_as_bytes()
        except google_exceptions.NotFound as e:
            raise SourceFileMissingError(f'Source file does not exist: {path}') from e

    def upload(self, path, data, content_type='application/octet-stream'):
        with transient_google_errors(f'Uploading gs://{self.bucket_name}/{path}'):
            self.bucket.blob(path).upload_from_string(data, content_type=content_type)
        return f'gs://{self.bucket_name}/{path}'


class LocalStorage:
    """Files under a local folder; paths are relative to ``root``."""

    def __init__(self, root):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def _full_path(self, path):
        full_path = safe_join(self.root, path)
        if full_path is None:
            raise SourceFileMissingError(f'Invalid storage path: {path}')
        return full_path

    def exists(self, path):
        return os.path.isfile(self._full_path(path))

    def download(self, path):
        full_path = self._full_path(path)
        if not os.path.isfile(full_path):
            raise SourceFileMissingError(f'Source file does not exist: {path}')
        with open(full_path, 'rb') as f:
            return f.read()

    def upload(self, path, data, content_type='application/octet-stream'):
        full_path = self._full_path(path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        if isinstance(data, str):
            data = data.encode('utf-8')
        with open(full_path, 'wb') as f:
            f.write(data)
        return full_path


def create_storage(config):
    backend = config.get('STORAGE_BACKEND', 'local')
    if backend == 'gcs':
        return GCSStorage(
            config['GCS_BUCKET_NAME'],
            project=config.get('GCP_PROJECT_ID'),
            key_file=config.get('GCP_KEY_FILE'),
        )
    if backend == 'local':
        return LocalStorage(config.get('LOCAL_STORAGE_ROOT', 'uploads'))
    raise ValueError(f'Unknown storage backend: {backend}')
