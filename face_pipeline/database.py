from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.sql import func

from .config import Config

Base = declarative_base()


# Database Models
class FaceModel(Base):
    __tablename__ = "faces"

    id = Column(Integer, primary_key=True, index=True)
    photo_id = Column(Integer, nullable=False, index=True)
    event_id = Column(Integer, nullable=False, index=True)
    bbox = Column(JSON, nullable=False)  # {"left", "top", "width", "height"}
    landmarks = Column(JSON)  # 5 x [x, y]
    yaw = Column(Float)
    pitch = Column(Float)
    roll = Column(Float)
    face_embedding = Column(JSON)  # identity, 512 floats
    appearance_embedding = Column(JSON)  # 256 floats
    fused_embedding = Column(JSON)
    recognized_tag_id = Column(Integer, index=True)
    face_score = Column(Float, nullable=False)
    fused_score = Column(Float)
    state = Column(String, nullable=False, default="pending")
    match_reason = Column(String)
    created_at = Column(DateTime, default=func.now())


class GalleryEntryModel(Base):
    __tablename__ = "person_embeddings"

    id = Column(Integer, primary_key=True, index=True)
    tag_id = Column(Integer, nullable=False, index=True)
    event_id = Column(Integer, nullable=False, index=True)
    embedding = Column(JSON, nullable=False)
    source_face_id = Column(Integer, ForeignKey("faces.id", ondelete="SET NULL"))
    fusion_version = Column(String, nullable=False)
    created_at = Column(DateTime, default=func.now())


def create_session_factory(database_url: str = Config.DATABASE_URL) -> sessionmaker:
    """Create an engine for ``database_url`` and return a bound session factory."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Sessions are used from worker threads
        connect_args["check_same_thread"] = False
        db_path = database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, connect_args=connect_args)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker):
    """One transaction: commit on success, roll back on any error."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# Initialize database
def init_db(session_factory: sessionmaker):
    """Create all database tables"""
    Base.metadata.create_all(bind=session_factory.kw["bind"])
