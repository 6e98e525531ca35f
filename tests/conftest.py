from pathlib import Path
import sys

import pytest

# Ensure repo root is on sys.path so tests can import `face_pipeline` without installing it.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from face_pipeline.database import create_session_factory, init_db  # noqa: E402
from face_pipeline.store import FaceStore  # noqa: E402
from face_pipeline.workers import InferencePool  # noqa: E402


@pytest.fixture
def session_factory(tmp_path: Path):
    factory = create_session_factory(f"sqlite:///{tmp_path / 'faces.db'}")
    init_db(factory)
    return factory


@pytest.fixture
def store(session_factory) -> FaceStore:
    return FaceStore(session_factory)


@pytest.fixture
def pool():
    p = InferencePool(detection_workers=1, embedding_workers=2, gallery_workers=1)
    yield p
    p.shutdown(wait=True)
