"""
Face Pipeline
=============

This package provides face detection, identity/appearance embeddings,
embedding fusion, gallery matching and gallery maintenance for event photos.

COMPONENTS:
-----------
- config: Configuration settings (env-overridable)
- variants: Declared detector exports and their output-head tables
- preprocess: Letterbox resize and tensor normalization
- decoder: SCRFD head decoding into original-image candidates
- nms: Greedy non-max suppression
- detector: DetectorService (onnxruntime SCRFD)
- embedder: EmbeddingService (ArcFace identity + OSNet appearance)
- fusion: Versioned identity/appearance fusion policies
- search: FAISS gallery matching with ambiguity margin
- gallery: Bounded per-tag gallery maintenance
- store / database: SQLAlchemy persistence for faces and gallery entries
- workers: Inference thread pools with per-photo timeout
- processor: FacePipeline, which ties everything together

USAGE:
------
    from face_pipeline import FacePipeline, RecognitionContext

    pipeline = FacePipeline.from_config()
    result = pipeline.process_photo(photo_id=1, image=image_bytes,
                                    context=RecognitionContext(event_id=1))
"""

from .config import Config, print_config
from .errors import DetectorUnavailable, EmbedderUnavailable, ModelUnavailable
from .processor import FacePipeline
from .schemas import FaceRecord, FaceState, PhotoResult, RecognitionContext

__version__ = "1.0.0"
__all__ = [
    "Config",
    "DetectorUnavailable",
    "EmbedderUnavailable",
    "FacePipeline",
    "FaceRecord",
    "FaceState",
    "ModelUnavailable",
    "PhotoResult",
    "RecognitionContext",
    "print_config",
]
