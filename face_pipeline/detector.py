"""
Face Detector Module
====================

This module runs the SCRFD face detector through onnxruntime and turns its
raw output heads into clean, suppressed face detections.

EDUCATIONAL NOTES:
------------------
SCRFD is an anchor-based detector with one output head per stride
(8, 16, 32). Each head predicts, for every anchor on its grid:
- a face score
- (left, top, right, bottom) distances from the anchor centre to the box edges
- 5 facial landmarks as (dx, dy) offsets from the anchor centre

The network itself never sees the original photo: the photo is letterboxed
into a square canvas first (preprocess.py) and decoded boxes are mapped
back onto the photo afterwards (decoder.py).

Which output tensor is which head is NOT guessed from tensor names. The
detector variant (variants.py) declares it explicitly.

The inference session is created lazily on first use and shared by every
later call. onnxruntime sessions are safe to call from several threads.

USAGE:
------
    from face_pipeline.detector import DetectorService, decode_image

    detector = DetectorService()
    image = decode_image(jpeg_bytes)
    faces, warning = detector.detect(image)
    # faces = [{"left": .., "top": .., "width": .., "height": ..,
    #           "score": 0.93, "landmarks": [[x, y], ...]}]
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
import onnxruntime as ort

from .config import Config
from .decoder import HeadDecoder
from .errors import DetectorUnavailable
from .nms import non_max_suppression
from .preprocess import ensure_bgr, letterbox, to_blob
from .variants import DetectorVariant, get_variant

logger = logging.getLogger(__name__)


def decode_image(image_bytes: bytes) -> np.ndarray:
    """
    Decode encoded image bytes (JPEG, PNG, ...) into a BGR array.

    Raises:
        ValueError: If the bytes are not a decodable image
    """
    if not image_bytes:
        raise ValueError("Empty image data")
    nparr = np.frombuffer(image_bytes, np.uint8)
    image = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError("Failed to decode image")
    return image


def create_session(model_path: Path, providers: Optional[List[str]] = None):
    """Create an onnxruntime inference session for ``model_path``."""
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return ort.InferenceSession(
        str(model_path),
        sess_options=options,
        providers=providers or ["CPUExecutionProvider"],
    )


class DetectorService:
    """
    Long-lived SCRFD detection service.

    Construct once per process and pass it to the pipeline. The model is
    loaded on the first ``initialize()``/``detect()`` call; a session can also
    be injected directly (anything exposing ``get_inputs``, ``get_outputs``
    and ``run`` like an onnxruntime session).
    """

    def __init__(
        self,
        variant: Optional[DetectorVariant] = None,
        model_path: Optional[Path] = None,
        session=None,
        confidence_threshold: float = Config.DETECTION_CONFIDENCE_THRESHOLD,
        nms_threshold: float = Config.NMS_IOU_THRESHOLD,
        max_detections: int = Config.MAX_DETECTIONS,
        providers: Optional[List[str]] = None,
    ):
        self.variant = variant or get_variant(Config.DETECTOR_VARIANT)
        self.model_path = Path(model_path or Config.DETECTOR_MODEL_PATH)
        self.nms_threshold = nms_threshold
        self.max_detections = max_detections
        self.providers = providers
        self.decoder = HeadDecoder(
            self.variant,
            confidence_threshold=confidence_threshold,
            max_candidates=max_detections,
        )

        self._session = session
        self._input_name: Optional[str] = None
        self._output_names: List[str] = []
        self._lock = threading.Lock()
        if session is not None:
            self._bind(session)

    def _bind(self, session):
        self._input_name = session.get_inputs()[0].name
        self._output_names = [o.name for o in session.get_outputs()]

    def initialize(self):
        """
        Load the detector session if it is not loaded yet.

        Raises:
            DetectorUnavailable: Model file missing or session creation failed
        """
        if self._session is not None:
            return
        with self._lock:
            if self._session is not None:
                return
            if not self.model_path.exists():
                logger.error(f"Detector model not found at {self.model_path}")
                raise DetectorUnavailable(f"Detector model not found at {self.model_path}")
            try:
                session = create_session(self.model_path, self.providers)
                self._bind(session)
            except Exception as e:
                logger.error(f"Failed to load detector {self.model_path}: {e}")
                raise DetectorUnavailable(f"Failed to load detector {self.model_path.name}: {e}") from e
            self._session = session
            logger.info(f"✓ Face detector loaded: {self.variant.key} from {self.model_path.name}")

    def shutdown(self):
        """Release the inference session. A later call loads it again."""
        with self._lock:
            self._session = None
            self._input_name = None
            self._output_names = []

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def health(self) -> Dict:
        """Report whether the detector can be used, without raising."""
        try:
            self.initialize()
            return {"ok": True, "variant": self.variant.key}
        except DetectorUnavailable as e:
            return {"ok": False, "error": str(e)}

    def detect(self, image: np.ndarray) -> Tuple[List[Dict], Optional[str]]:
        """
        Detect faces in a BGR image.

        Args:
            image: OpenCV image (BGR, gray or BGRA numpy array)

        Returns:
            Tuple of (faces, warning). Faces are sorted by descending score,
            at most ``max_detections`` long, with boxes clamped to the image.
            ``warning`` is set when the detector output could not be decoded.

        Raises:
            DetectorUnavailable: The model cannot be loaded
        """
        self.initialize()
        image = ensure_bgr(image)

        canvas, lb = letterbox(image, self.variant.input_size, self.variant.pad_value)
        blob = to_blob(canvas, self.variant)

        outputs = self._session.run(None, {self._input_name: blob})
        candidates, warning = self.decoder.decode(outputs, self._output_names, lb)
        if warning:
            return [], warning

        faces = non_max_suppression(candidates, self.nms_threshold, self.max_detections)
        logger.debug(f"Detected {len(faces)} faces ({len(candidates)} candidates before NMS)")
        return faces, None
