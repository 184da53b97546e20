from sqlalchemy import create_engine, text, Column, String, DateTime, Text, Integer, Index
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from datetime import datetime
from typing import Generator, Optional
from config import settings
from job_states import ACTIVE_STATUS_VALUES
import logging

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

# Create engine with connection pooling
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    pool_recycle=3600,
    connect_args=_connect_args,
    echo=False
)

_ACTIVE_ITEM_JOB = text(
    "item_number > 0 AND status IN (%s)" % ", ".join(f"'{s}'" for s in ACTIVE_STATUS_VALUES)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

class VideoJob(Base):
    __tablename__ = 'video_jobs'

    id = Column(String, primary_key=True, index=True)
    item_number = Column(Integer, nullable=False, index=True)
    status = Column(String, default='queued', index=True)
    stage = Column(String, nullable=True)
    progress = Column(Integer, default=0)
    total = Column(Integer, default=100)
    message = Column(Text, default='')
    error = Column(Text, nullable=True)

    upload_token_hash = Column(String, nullable=True)
    upload_token_expires_at = Column(DateTime, nullable=True)

    worker_last_seen_at = Column(DateTime, nullable=True, index=True)
    worker_id = Column(String, nullable=True)

    result_video_url = Column(Text, nullable=True)
    result_video_public_id = Column(String, nullable=True)
    result_icon_url = Column(Text, nullable=True)
    result_icon_public_id = Column(String, nullable=True)

    last_progress_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # At most one active job per item, enforced by the database as well as by start_job.
    __table_args__ = (
        Index(
            "uq_video_jobs_active_item",
            "item_number",
            unique=True,
            postgresql_where=_ACTIVE_ITEM_JOB,
            sqlite_where=_ACTIVE_ITEM_JOB,
        ),
    )

    def result_dict(self) -> dict:
        return {
            "video_url": self.result_video_url,
            "video_public_id": self.result_video_public_id,
            "icon_url": self.result_icon_url,
            "icon_public_id": self.result_icon_public_id,
        }

class CatalogItem(Base):
    """Catalog record the pipeline publishes its results onto."""
    __tablename__ = 'catalog_items'

    item_number = Column(Integer, primary_key=True)
    name = Column(String, nullable=True)
    video_url = Column(Text, nullable=True)
    video_public_id = Column(String, nullable=True)
    icon_url = Column(Text, nullable=True)
    icon_public_id = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

def get_db() -> Generator[Session, None, None]:
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()

def create_tables():
    """Create all tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating tables: {e}")
        raise

def get_job_by_id(db: Session, job_id: str) -> Optional[VideoJob]:
    """Get job by ID"""
    return db.query(VideoJob).filter(VideoJob.id == job_id).first()

def get_latest_job_for_item(db: Session, item_number: int) -> Optional[VideoJob]:
    return (
        db.query(VideoJob)
        .filter(VideoJob.item_number == item_number)
        .order_by(VideoJob.created_at.desc())
        .first()
    )

def get_newest_job(db: Session) -> Optional[VideoJob]:
    return db.query(VideoJob).order_by(VideoJob.created_at.desc()).first()

def get_latest_heartbeat_job(db: Session) -> Optional[VideoJob]:
    """Row carrying the most recent worker liveness timestamp"""
    return (
        db.query(VideoJob)
        .filter(VideoJob.worker_last_seen_at.isnot(None))
        .order_by(VideoJob.worker_last_seen_at.desc())
        .first()
    )

def get_active_jobs(db: Session, item_number: Optional[int] = None, for_update: bool = False):
    query = db.query(VideoJob).filter(
        VideoJob.status.in_(ACTIVE_STATUS_VALUES),
        VideoJob.item_number > 0
    )
    if item_number is not None:
        query = query.filter(VideoJob.item_number == item_number)
    if for_update:
        query = query.with_for_update()
    return query.order_by(VideoJob.created_at.desc()).all()

def get_catalog_item(db: Session, item_number: int) -> Optional[CatalogItem]:
    return db.query(CatalogItem).filter(CatalogItem.item_number == item_number).first()
