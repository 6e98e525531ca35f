"""
Face Pipeline Configuration
===========================

This module contains all configurable settings for the face pipeline.
Every value can be overridden through an environment variable, and every
component also accepts its settings as constructor arguments (defaults
come from here).

USAGE:
------
    from face_pipeline.config import Config

    threshold = Config.SIMILARITY_THRESHOLD
    variant = Config.DETECTOR_VARIANT

SWITCHING DETECTOR VARIANTS:
----------------------------
    The detector output heads are decoded through an explicit table in
    variants.py. To deploy another export of SCRFD:
    1. Add (or pick) its entry in DETECTOR_VARIANTS
    2. Set FACE_DETECTOR_VARIANT to that name and SCRFD_MODEL_PATH to the file
    3. Restart the application
"""

import os
from pathlib import Path

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / "data"
MODELS_DIR = BASE_DIR / "models"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """
    Central configuration for the face pipeline.

    Thresholds are cosine similarities on L2-normalized vectors.
    """

    # =========================================================================
    # MODEL SELECTION
    # =========================================================================
    # Declared detector identity; selects the head-mapping table in variants.py
    DETECTOR_VARIANT: str = os.getenv("FACE_DETECTOR_VARIANT", "scrfd_2.5g_bnkps")

    DETECTOR_MODEL_PATH = Path(os.getenv("SCRFD_MODEL_PATH", str(MODELS_DIR / "scrfd_2.5g_bnkps.onnx")))
    IDENTITY_MODEL_PATH = Path(os.getenv("ARCFACE_MODEL_PATH", str(MODELS_DIR / "arcface_r50.onnx")))
    APPEARANCE_MODEL_PATH = Path(os.getenv("OSNET_MODEL_PATH", str(MODELS_DIR / "osnet_x0_25.onnx")))

    # =========================================================================
    # FACE DETECTION SETTINGS
    # =========================================================================
    # Minimum (post-activation) anchor score kept by the head decoder
    DETECTION_CONFIDENCE_THRESHOLD = float(os.getenv("FACE_CONF_THRESHOLD", "0.3"))

    # Non-max suppression: drop boxes overlapping an accepted box above this IoU
    NMS_IOU_THRESHOLD = float(os.getenv("FACE_NMS_THRESHOLD", "0.4"))

    # Hard cap on candidates, applied after sorting by score and before NMS
    MAX_DETECTIONS = int(os.getenv("FACE_MAX_DETECTIONS", "150"))

    # Boxes with width or height <= this many pixels are degenerate
    MIN_BOX_SIZE = 1.0

    # =========================================================================
    # EMBEDDING SETTINGS
    # =========================================================================
    # ArcFace takes 112x112 aligned crops and emits 512 values
    IDENTITY_INPUT_SIZE = (112, 112)
    IDENTITY_EMBEDDING_DIM = int(os.getenv("FACE_IDENTITY_DIM", "512"))

    # OSNet re-id input is (width, height) = (128, 256)
    APPEARANCE_INPUT_SIZE = (128, 256)
    APPEARANCE_EMBEDDING_DIM = int(os.getenv("FACE_APPEARANCE_DIM", "256"))

    # Use 5-point landmarks for a similarity-transform alignment when present
    ALIGN_FACES = _env_bool("FACE_ALIGN", "true")

    # Crops smaller than this (either side, after clamping) are skipped
    MIN_CROP_SIZE = int(os.getenv("FACE_MIN_CROP", "8"))

    # Body region derived from the face box when no person box is supplied:
    # BODY_WIDTH_FACTOR face-widths wide, from half a face above the box down
    # to BODY_HEIGHT_FACTOR face-heights below its top edge
    BODY_WIDTH_FACTOR = 3.0
    BODY_HEIGHT_FACTOR = 6.0

    # =========================================================================
    # FUSION SETTINGS
    # =========================================================================
    # One of: weighted_concat, weighted_sum, identity_only (see fusion.py)
    FUSION_POLICY = os.getenv("FACE_FUSION_POLICY", "weighted_concat")
    FUSION_VERSION = os.getenv("FACE_FUSION_VERSION", "v1")
    IDENTITY_WEIGHT = float(os.getenv("FACE_IDENTITY_WEIGHT", "0.8"))
    APPEARANCE_WEIGHT = float(os.getenv("FACE_APPEARANCE_WEIGHT", "0.2"))

    # =========================================================================
    # MATCHING SETTINGS
    # =========================================================================
    # Tune per deployment; fused same-person scores depend on the weights above
    SIMILARITY_THRESHOLD = float(os.getenv("FACE_THRESHOLD", "0.6"))

    # Best tag must beat the runner-up tag by at least this much
    AMBIGUITY_MARGIN = float(os.getenv("FACE_AMBIGUITY_MARGIN", "0.03"))

    # Automatic matches at or above this score feed the gallery
    AUTO_ENROLL_THRESHOLD = float(os.getenv("FACE_AUTO_ENROLL_THRESHOLD", "0.75"))

    # =========================================================================
    # GALLERY SETTINGS
    # =========================================================================
    GALLERY_MAX_ENTRIES = int(os.getenv("FACE_GALLERY_MAX_ENTRIES", "20"))

    # New vectors below this similarity to the tag centroid are rejected
    GALLERY_OUTLIER_THRESHOLD = float(os.getenv("FACE_GALLERY_OUTLIER_THRESHOLD", "0.3"))

    # =========================================================================
    # CONCURRENCY SETTINGS
    # =========================================================================
    # Per-photo detection budget, read in milliseconds from DETECT_TIMEOUT_MS
    DETECT_TIMEOUT_SECONDS = int(os.getenv("DETECT_TIMEOUT_MS", "10000")) / 1000.0

    MAX_WORKERS = int(os.getenv("FACE_WORKERS", "2"))
    EMBED_WORKERS = int(os.getenv("FACE_EMBED_WORKERS", "2"))
    GALLERY_WORKERS = int(os.getenv("FACE_GALLERY_WORKERS", "1"))

    # =========================================================================
    # STORAGE / LOGGING
    # =========================================================================
    DATABASE_URL = os.getenv("FACE_DATABASE_URL", f"sqlite:///{DATA_DIR / 'faces.db'}")

    DEBUG = _env_bool("FACE_DEBUG", "false")


# =============================================================================
# HELPER FUNCTION TO PRINT CURRENT CONFIG
# =============================================================================

def print_config():
    """Print the current configuration for debugging."""
    print("=" * 60)
    print("FACE PIPELINE CONFIGURATION")
    print("=" * 60)
    print(f"Detector Variant: {Config.DETECTOR_VARIANT} ({Config.DETECTOR_MODEL_PATH})")
    print(f"Identity Model: {Config.IDENTITY_MODEL_PATH} ({Config.IDENTITY_EMBEDDING_DIM}-d)")
    print(f"Appearance Model: {Config.APPEARANCE_MODEL_PATH} ({Config.APPEARANCE_EMBEDDING_DIM}-d)")
    print(f"Confidence / NMS / Cap: {Config.DETECTION_CONFIDENCE_THRESHOLD} / "
          f"{Config.NMS_IOU_THRESHOLD} / {Config.MAX_DETECTIONS}")
    print(f"Fusion: {Config.FUSION_POLICY}:{Config.FUSION_VERSION} "
          f"(identity={Config.IDENTITY_WEIGHT}, appearance={Config.APPEARANCE_WEIGHT})")
    print(f"Match Threshold: {Config.SIMILARITY_THRESHOLD} (margin {Config.AMBIGUITY_MARGIN})")
    print(f"Gallery: max {Config.GALLERY_MAX_ENTRIES}/tag, outlier < {Config.GALLERY_OUTLIER_THRESHOLD}")
    print(f"Detect Timeout: {Config.DETECT_TIMEOUT_SECONDS}s, Workers: {Config.MAX_WORKERS}")
    print(f"Database: {Config.DATABASE_URL}")
    print("=" * 60)


if __name__ == "__main__":
    print_config()
