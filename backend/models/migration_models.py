"""
Tent Migrate - Migration Job Database Models
Jobs, delegated credentials, progress sets, stats and the work queue
"""
from sqlalchemy import Column, String, Integer, Text, DateTime, ForeignKey, Index, JSON, UniqueConstraint
from datetime import datetime

from core.database import Base


class MigrationCredential(Base):
    """
    Delegated MAC credentials issued by a Tent server for one side of a job.
    Each record is owned by exactly one job.
    """
    __tablename__ = "migration_credentials"

    id = Column(String(32), primary_key=True)
    side = Column(String(10), nullable=False)  # 'export', 'import'

    # Remote account
    entity = Column(String(512), nullable=False)  # https://alice.example.com
    server_url = Column(String(512), nullable=False)  # API root of the entity's server

    # MAC token material (mac_key encrypted with Fernet)
    mac_key_id = Column(String(255), nullable=False)
    mac_key = Column(Text, nullable=False)
    mac_algorithm = Column(String(50), default="hmac-sha-256")
    token_type = Column(String(50), default="mac")
    scopes = Column(JSON, default=list)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<MigrationCredential(id={self.id}, side={self.side}, entity={self.entity})>"


class MigrationJob(Base):
    """
    One migration from an export account to an import account.
    """
    __tablename__ = "migration_jobs"
    __table_args__ = (
        Index('idx_migration_jobs_status', 'status'),
    )

    job_key = Column(String(64), primary_key=True)
    export_credential_id = Column(String(32), ForeignKey('migration_credentials.id', ondelete='SET NULL'), unique=True)
    import_credential_id = Column(String(32), ForeignKey('migration_credentials.id', ondelete='SET NULL'), unique=True)

    # Status: pending, running, completed, failed
    status = Column(String(20), nullable=False, default='pending')
    error = Column(Text)

    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<MigrationJob(job_key={self.job_key}, status={self.status})>"


class MigrationProgress(Base):
    """
    Append-only progress sets, one row per (job, set, item id).
    """
    __tablename__ = "migration_progress"
    __table_args__ = (
        UniqueConstraint('job_key', 'set_name', 'item_id', name='uq_migration_progress_item'),
        Index('idx_migration_progress_set', 'job_key', 'set_name'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_key = Column(String(64), ForeignKey('migration_jobs.job_key', ondelete='CASCADE'), nullable=False)
    set_name = Column(String(64), nullable=False)  # exported_post_ids, imported_post_ids, ...
    item_id = Column(String(512), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class MigrationJobStat(Base):
    """
    Named scalar stats outside the typed job fields (cursors, category markers).
    """
    __tablename__ = "migration_job_stats"

    job_key = Column(String(64), ForeignKey('migration_jobs.job_key', ondelete='CASCADE'), primary_key=True)
    name = Column(String(128), primary_key=True)
    value = Column(Text)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MigrationQueueEntry(Base):
    """
    Durable work queue row. Present from enqueue until ack.
    """
    __tablename__ = "migration_queue"
    __table_args__ = (
        Index('idx_migration_queue_enqueued', 'enqueued_at'),
    )

    job_key = Column(String(64), ForeignKey('migration_jobs.job_key', ondelete='CASCADE'), primary_key=True)
    enqueued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    claimed_by = Column(String(128))
    claimed_at = Column(DateTime)
    attempts = Column(Integer, default=0, nullable=False)

    def __repr__(self):
        return f"<MigrationQueueEntry(job_key={self.job_key}, claimed_by={self.claimed_by})>"
