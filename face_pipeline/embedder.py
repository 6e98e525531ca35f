"""
Face Embedder Module
====================

This module turns each detected face into two vectors:

- Identity embedding: ArcFace (R50), 512 dimensions, from a 112x112 face crop
  aligned on the 5 detector landmarks.
- Appearance embedding: OSNet re-id, 256 dimensions, from a 128x256 crop of
  the person's body (clothing, hair, build). Helps when the face is small,
  turned away or blurred.

Both vectors are L2-normalized, so the dot product of two embeddings is
their cosine similarity.

FAILURE POLICY:
---------------
A degenerate crop (too small, or empty after clamping to the image) only
skips that one embedding. The face is still stored, with the embedding
left as None. A missing identity model is a resource failure and raises
EmbedderUnavailable; a missing appearance model only disables appearance
embeddings (logged once at load time).

USAGE:
------
    from face_pipeline.embedder import EmbeddingService

    embedder = EmbeddingService()
    identity, appearance = embedder.extract(image, bbox, landmarks)
    # identity = np.ndarray (512,) or None
    # appearance = np.ndarray (256,) or None
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import Config
from .detector import create_session
from .errors import EmbedderUnavailable, EmbeddingExtractionFailed
from .preprocess import normalize_crop
from .schemas import BoundingBox

logger = logging.getLogger(__name__)

# ArcFace reference landmark positions on a 112x112 crop
ARCFACE_TEMPLATE = np.array([
    [38.2946, 51.6963],  # eye (image left)
    [73.5318, 51.5014],  # eye (image right)
    [56.0252, 71.7366],  # nose tip
    [41.5493, 92.3655],  # mouth corner (image left)
    [70.7299, 92.2041],  # mouth corner (image right)
], dtype=np.float32)

# ArcFace: RGB, (x - 127.5) / 127.5
IDENTITY_MEAN = (127.5, 127.5, 127.5)
IDENTITY_STD = (127.5, 127.5, 127.5)

# OSNet: RGB, ImageNet statistics on a 0-255 scale
APPEARANCE_MEAN = (0.485 * 255, 0.456 * 255, 0.406 * 255)
APPEARANCE_STD = (0.229 * 255, 0.224 * 255, 0.225 * 255)


# =============================================================================
# VECTOR HELPERS
# =============================================================================

def l2_normalize(vector: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """Return ``vector`` scaled to unit length (a zero vector stays zero)."""
    v = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(v))
    if norm < eps:
        return np.zeros_like(v)
    return v / norm


def cosine_similarity(embedding1: np.ndarray, embedding2: np.ndarray) -> float:
    """
    Compute cosine similarity between two embeddings.

    Args:
        embedding1: First embedding
        embedding2: Second embedding (same length)

    Returns:
        Similarity in [-1, 1]; 0.0 if either vector is all zeros
    """
    e1 = l2_normalize(embedding1)
    e2 = l2_normalize(embedding2)
    if e1.shape != e2.shape:
        raise ValueError(f"Embedding length mismatch: {e1.shape[0]} vs {e2.shape[0]}")
    return float(np.clip(np.dot(e1, e2), -1.0, 1.0))


# =============================================================================
# CROPPING
# =============================================================================

def clamp_region(
    region: Sequence[float], width: int, height: int
) -> Tuple[int, int, int, int]:
    """Round an (x1, y1, x2, y2) region outward and clamp it to the image."""
    x1, y1, x2, y2 = region
    x1 = int(max(0, np.floor(x1)))
    y1 = int(max(0, np.floor(y1)))
    x2 = int(min(width, np.ceil(x2)))
    y2 = int(min(height, np.ceil(y2)))
    return x1, y1, x2, y2


def crop_region(image: np.ndarray, region: Sequence[float], min_size: int = Config.MIN_CROP_SIZE) -> np.ndarray:
    """
    Crop an (x1, y1, x2, y2) region, clamped to the image.

    Raises:
        EmbeddingExtractionFailed: The clamped region is smaller than ``min_size``
    """
    height, width = image.shape[:2]
    x1, y1, x2, y2 = clamp_region(region, width, height)
    if x2 - x1 < min_size or y2 - y1 < min_size:
        raise EmbeddingExtractionFailed(
            f"Degenerate crop {x2 - x1}x{y2 - y1} (min {min_size}) at ({x1}, {y1})"
        )
    return image[y1:y2, x1:x2]


def align_face(
    image: np.ndarray,
    landmarks: Sequence[Sequence[float]],
    output_size: Tuple[int, int] = (112, 112),
) -> Optional[np.ndarray]:
    """
    Align a face onto the ArcFace template using its 5 landmarks.

    Face alignment ensures the face is upright and centered, which
    significantly improves embedding quality.

    Args:
        image: Full image
        landmarks: 5 x [x, y] detector landmarks
        output_size: Size of the aligned crop (width, height)

    Returns:
        Aligned crop, or None if no similarity transform could be estimated
    """
    src_pts = np.asarray(landmarks, dtype=np.float32).reshape(5, 2)
    dst_pts = ARCFACE_TEMPLATE * np.array(
        [output_size[0] / 112.0, output_size[1] / 112.0], dtype=np.float32
    )

    tform = cv2.estimateAffinePartial2D(src_pts, dst_pts)[0]
    if tform is None:
        return None

    return cv2.warpAffine(image, tform, output_size, borderMode=cv2.BORDER_REPLICATE)


def body_region(
    bbox: BoundingBox,
    width_factor: float = Config.BODY_WIDTH_FACTOR,
    height_factor: float = Config.BODY_HEIGHT_FACTOR,
) -> Tuple[float, float, float, float]:
    """
    Estimate the person's body region from the face box (unclamped xyxy).

    The region is ``width_factor`` face-widths wide, centred on the face, and
    spans from half a face-height above the box to ``height_factor``
    face-heights below its top edge.
    """
    cx = bbox.left + bbox.width / 2.0
    half_w = bbox.width * width_factor / 2.0
    return (
        cx - half_w,
        bbox.top - bbox.height * 0.5,
        cx + half_w,
        bbox.top + bbox.height * height_factor,
    )


# =============================================================================
# EMBEDDING SERVICE
# =============================================================================

class EmbeddingService:
    """
    Identity + appearance embedding extractor.

    Both sessions load lazily on first use and are then shared by every
    worker thread. Sessions can be injected for testing.
    """

    def __init__(
        self,
        identity_model_path: Optional[Path] = None,
        appearance_model_path: Optional[Path] = None,
        identity_session=None,
        appearance_session=None,
        align: bool = Config.ALIGN_FACES,
        min_crop_size: int = Config.MIN_CROP_SIZE,
        identity_dim: int = Config.IDENTITY_EMBEDDING_DIM,
        appearance_dim: int = Config.APPEARANCE_EMBEDDING_DIM,
        providers=None,
    ):
        self.identity_model_path = Path(identity_model_path or Config.IDENTITY_MODEL_PATH)
        self.appearance_model_path = Path(appearance_model_path or Config.APPEARANCE_MODEL_PATH)
        self.identity_input_size = Config.IDENTITY_INPUT_SIZE
        self.appearance_input_size = Config.APPEARANCE_INPUT_SIZE
        self.identity_dim = identity_dim
        self.appearance_dim = appearance_dim
        self.align = align
        self.min_crop_size = min_crop_size
        self.providers = providers

        self._identity = identity_session
        self._appearance = appearance_session
        # Appearance loading is attempted once; failure leaves it disabled.
        # Injected sessions never fall back to loading from disk.
        self._appearance_checked = appearance_session is not None or identity_session is not None
        self._appearance_error: Optional[str] = None
        self._lock = threading.Lock()

    def initialize(self):
        """
        Load the embedding sessions if they are not loaded yet.

        Raises:
            EmbedderUnavailable: Identity model missing or failed to load
        """
        if self._identity is not None and self._appearance_checked:
            return
        with self._lock:
            if self._identity is None:
                self._identity = self._load(self.identity_model_path, "identity")
                logger.info(f"✓ Identity embedder loaded: {self.identity_model_path.name} ({self.identity_dim} dimensions)")
            if not self._appearance_checked:
                self._appearance_checked = True
                try:
                    self._appearance = self._load(self.appearance_model_path, "appearance")
                    logger.info(f"✓ Appearance embedder loaded: {self.appearance_model_path.name} ({self.appearance_dim} dimensions)")
                except EmbedderUnavailable as e:
                    self._appearance_error = str(e)
                    logger.warning(f"⚠ Appearance embeddings disabled: {e}")

    def _load(self, path: Path, kind: str):
        if not path.exists():
            logger.error(f"{kind.capitalize()} model not found at {path}")
            raise EmbedderUnavailable(f"{kind.capitalize()} model not found at {path}")
        try:
            return create_session(path, self.providers)
        except Exception as e:
            logger.error(f"Failed to load {kind} model {path}: {e}")
            raise EmbedderUnavailable(f"Failed to load {kind} model {path.name}: {e}") from e

    def shutdown(self):
        """Release both sessions."""
        with self._lock:
            self._identity = None
            self._appearance = None
            self._appearance_checked = False
            self._appearance_error = None

    @property
    def has_appearance(self) -> bool:
        return self._appearance is not None

    def health(self) -> Dict:
        """Report embedder availability, without raising."""
        try:
            self.initialize()
        except EmbedderUnavailable as e:
            return {"ok": False, "error": str(e)}
        status = {"ok": True, "appearance": self.has_appearance}
        if self._appearance_error:
            status["appearance_error"] = self._appearance_error
        return status

    @staticmethod
    def _run(session, tensor: np.ndarray, expected_dim: int, kind: str) -> np.ndarray:
        input_name = session.get_inputs()[0].name
        output = np.asarray(session.run(None, {input_name: tensor})[0], dtype=np.float32).reshape(-1)
        if output.shape[0] != expected_dim:
            raise EmbeddingExtractionFailed(
                f"{kind} network returned {output.shape[0]} values, expected {expected_dim}"
            )
        if not np.all(np.isfinite(output)) or float(np.linalg.norm(output)) < 1e-12:
            raise EmbeddingExtractionFailed(f"{kind} network returned a degenerate vector")
        return l2_normalize(output)

    def identity_embedding(
        self,
        image: np.ndarray,
        bbox: BoundingBox,
        landmarks: Optional[Sequence[Sequence[float]]] = None,
    ) -> np.ndarray:
        """
        512-d identity embedding for one face.

        The bbox gates the crop even when landmarks are available, so a
        face too small to crop is never embedded from an upsampled warp.

        Raises:
            EmbeddingExtractionFailed: Degenerate crop or unusable output
        """
        self.initialize()
        crop = crop_region(image, bbox.as_xyxy(), self.min_crop_size)

        face = None
        if self.align and landmarks is not None:
            face = align_face(image, landmarks, self.identity_input_size)
        if face is None:
            face = crop

        tensor = normalize_crop(face, self.identity_input_size, IDENTITY_MEAN, IDENTITY_STD)
        return self._run(self._identity, tensor, self.identity_dim, "identity")

    def appearance_embedding(
        self,
        image: np.ndarray,
        bbox: BoundingBox,
        person_box: Optional[Sequence[float]] = None,
    ) -> np.ndarray:
        """
        256-d appearance embedding from the person's body region.

        Args:
            image: Full BGR image
            bbox: Face box, used to derive the body region
            person_box: Optional (x1, y1, x2, y2) person box; overrides the derived region

        Raises:
            EmbeddingExtractionFailed: No appearance model, degenerate crop or unusable output
        """
        self.initialize()
        if self._appearance is None:
            raise EmbeddingExtractionFailed("Appearance model unavailable")
        region = person_box if person_box is not None else body_region(bbox)
        crop = crop_region(image, region, self.min_crop_size)
        tensor = normalize_crop(crop, self.appearance_input_size, APPEARANCE_MEAN, APPEARANCE_STD)
        return self._run(self._appearance, tensor, self.appearance_dim, "appearance")

    def extract(
        self,
        image: np.ndarray,
        bbox: BoundingBox,
        landmarks: Optional[Sequence[Sequence[float]]] = None,
        person_box: Optional[Sequence[float]] = None,
    ) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
        """
        Compute both embeddings for one face; a failed one comes back as None.

        Raises:
            EmbedderUnavailable: The identity model cannot be loaded
        """
        self.initialize()

        identity = None
        try:
            identity = self.identity_embedding(image, bbox, landmarks)
        except EmbeddingExtractionFailed as e:
            logger.warning(f"Identity embedding skipped: {e}")

        appearance = None
        if self.has_appearance:
            try:
                appearance = self.appearance_embedding(image, bbox, person_box)
            except EmbeddingExtractionFailed as e:
                logger.warning(f"Appearance embedding skipped: {e}")

        return identity, appearance
