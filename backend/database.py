from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import uuid

db = SQLAlchemy()

# Dataset.status
STATUS_PROCESSING = 'processing'
STATUS_AVAILABLE = 'available'
STATUS_ERROR = 'error'

# Dataset.warehouse_status
WAREHOUSE_PENDING = 'pending'
WAREHOUSE_LOADED = 'loaded'
WAREHOUSE_FAILED = 'failed'

# ProcessingJob.status
JOB_PROCESSING = 'processing'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'

JOB_TYPE_SCHEMA_EXTRACTION = 'schema_extraction'


def _uuid():
    return str(uuid.uuid4())


class Dataset(db.Model):
    __tablename__ = 'datasets'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(128), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    data_type = db.Column(db.String(50), nullable=False)  # csv, excel
    file_path = db.Column(db.String(512), nullable=False)
    row_count = db.Column(db.Integer)
    column_count = db.Column(db.Integer)
    file_size_bytes = db.Column(db.BigInteger)
    preview_available = db.Column(db.Boolean, default=False)
    status = db.Column(db.String(50), nullable=False, default=STATUS_PROCESSING)  # processing, available, error
    error_message = db.Column(db.Text)
    warehouse_status = db.Column(db.String(50), nullable=False, default=WAREHOUSE_PENDING)  # pending, loaded, failed
    warehouse_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    columns = db.relationship(
        'DatasetColumn', backref='dataset', cascade='all, delete-orphan',
        order_by='DatasetColumn.position',
    )
    jobs = db.relationship('ProcessingJob', backref='dataset', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'name': self.name,
            'data_type': self.data_type,
            'row_count': self.row_count,
            'column_count': self.column_count,
            'file_size_bytes': self.file_size_bytes,
            'preview_available': self.preview_available,
            'status': self.status,
            'error_message': self.error_message,
            'warehouse_status': self.warehouse_status,
            'warehouse_error': self.warehouse_error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Dataset {self.name} - {self.status}>"


class DatasetColumn(db.Model):
    __tablename__ = 'dataset_columns'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    dataset_id = db.Column(db.String(36), db.ForeignKey('datasets.id', ondelete='CASCADE'), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(50), nullable=False)
    nullable = db.Column(db.Boolean, nullable=False, default=True)
    position = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, default='')

    def to_dict(self):
        return {
            'name': self.name,
            'type': self.type,
            'nullable': self.nullable,
            'position': self.position,
            'description': self.description or '',
        }

    def __repr__(self):
        return f"<DatasetColumn {self.position}:{self.name} {self.type}>"


class ProcessingJob(db.Model):
    __tablename__ = 'processing_jobs'
    __table_args__ = (
        # At most one active job per dataset and job type
        db.Index(
            'uq_processing_jobs_active', 'dataset_id', 'job_type', unique=True,
            sqlite_where=db.text("status = 'processing'"),
            postgresql_where=db.text("status = 'processing'"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    dataset_id = db.Column(db.String(36), db.ForeignKey('datasets.id', ondelete='CASCADE'), nullable=False, index=True)
    job_type = db.Column(db.String(50), nullable=False, default=JOB_TYPE_SCHEMA_EXTRACTION)
    status = db.Column(db.String(20), nullable=False, default=JOB_PROCESSING)  # processing, completed, failed
    progress = db.Column(db.Integer, default=0)
    attempts = db.Column(db.Integer, default=0)
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'dataset_id': self.dataset_id,
            'job_type': self.job_type,
            'status': self.status,
            'progress': self.progress,
            'attempts': self.attempts,
            'error_message': self.error_message,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<ProcessingJob {self.id} - {self.status}>"


def find_active_job(dataset_id, job_type=JOB_TYPE_SCHEMA_EXTRACTION):
    return ProcessingJob.query.filter_by(
        dataset_id=dataset_id, job_type=job_type, status=JOB_PROCESSING,
    ).first()


def get_dataset_columns(dataset_id):
    return DatasetColumn.query.filter_by(dataset_id=dataset_id).order_by(DatasetColumn.position).all()
