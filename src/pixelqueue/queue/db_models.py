from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Timestamps are fixed-width UTC ISO strings, as in the SQLite store


class FileRow(Base):
    __tablename__ = "files"
    id = Column(String, primary_key=True)
    project_id = Column(String, nullable=False, index=True)
    namespace = Column(String, nullable=False)
    storage_key = Column(String, nullable=False, unique=True)
    filename = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    size = Column(Integer, nullable=False)
    width = Column(Integer)
    height = Column(Integer)
    status = Column(String, nullable=False)
    variants = Column(Text, nullable=False, default="{}")  # JSON name → key
    planned_variants = Column(Text, nullable=False, default="{}")
    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=False)


class JobRow(Base):
    __tablename__ = "jobs"
    id = Column(String, primary_key=True)
    file_id = Column(String, ForeignKey("files.id", ondelete="CASCADE"), nullable=False)
    status = Column(String, nullable=False)
    payload = Column(Text, nullable=False)  # JSON JobPayload
    variant_set = Column(String, nullable=False, default="")
    attempts = Column(Integer, nullable=False, default=0)
    claim_token = Column(String)
    worker_id = Column(String)
    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=False)
    claimed_at = Column(String(32))
    completed_at = Column(String(32))
    error = Column(Text)
    result = Column(Text)

    __table_args__ = (
        Index("idx_jobs_status_created", "status", "created_at"),
        Index("idx_jobs_file_variant_set", "file_id", "variant_set"),
    )


class JobTransitionRow(Base):
    __tablename__ = "job_transitions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    from_state = Column(String)
    to_state = Column(String, nullable=False)
    timestamp = Column(String(32), nullable=False)
    worker_id = Column(String)
    note = Column(String(200))

    __table_args__ = (Index("idx_transitions_job", "job_id", "id"),)
