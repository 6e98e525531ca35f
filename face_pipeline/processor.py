"""
Face Pipeline Module
====================

This is the main entry point for face recognition operations.
It combines detection, embedding, fusion, gallery matching, persistence
and gallery maintenance.

PER-PHOTO FLOW:
---------------
1. Detection on the detection pool, bounded by the per-photo timeout
2. Identity + appearance embeddings, one embedding task per face
3. Fusion and matching against the event's gallery snapshot
4. All faces of the photo written in one transaction
5. High-confidence automatic matches queued as gallery updates

A timeout at step 1 returns an empty result flagged ``timed_out`` and
writes nothing, so the photo can simply be retried.

USAGE:
------
    from face_pipeline import FacePipeline, RecognitionContext

    pipeline = FacePipeline.from_config()
    result = pipeline.process_photo(photo_id=7, image=jpeg_bytes,
                                    context=RecognitionContext(event_id=1))
    for face in result.faces:
        print(face.bbox, face.recognized_tag_id, face.fused_score)

    # A human labels a face
    pipeline.resolve_manually(face_id=42, tag_id=3)
"""

import logging
import threading
import time
from concurrent.futures import Future
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import Config
from .database import create_session_factory, init_db
from .detector import DetectorService, decode_image
from .embedder import EmbeddingService
from .errors import DetectionTimeout
from .fusion import FusionPolicy
from .gallery import GalleryMaintainer
from .logging_config import photo_context
from .pose import estimate_pose
from .schemas import (
    BoundingBox,
    FaceRecord,
    FaceState,
    GalleryUpdateEvent,
    PhotoResult,
    RecognitionContext,
)
from .search import GalleryMatcher
from .store import FaceStore
from .workers import InferencePool, get_pool

logger = logging.getLogger(__name__)


def _person_box_for(bbox: BoundingBox, person_boxes: Optional[Sequence[Sequence[float]]]):
    """Smallest supplied (x1, y1, x2, y2) person box containing the face centre."""
    if not person_boxes:
        return None
    cx = bbox.left + bbox.width / 2.0
    cy = bbox.top + bbox.height / 2.0
    containing = [
        box for box in person_boxes
        if box[0] <= cx <= box[2] and box[1] <= cy <= box[3]
    ]
    if not containing:
        return None
    return min(containing, key=lambda b: (b[2] - b[0]) * (b[3] - b[1]))


class FacePipeline:
    """
    Main face processing class.

    Services are constructed once and passed in; the pipeline itself holds
    no model state.
    """

    def __init__(
        self,
        detector: DetectorService,
        embedder: EmbeddingService,
        store: FaceStore,
        fusion: Optional[FusionPolicy] = None,
        matcher: Optional[GalleryMatcher] = None,
        gallery: Optional[GalleryMaintainer] = None,
        pool: Optional[InferencePool] = None,
        detect_timeout: Optional[float] = Config.DETECT_TIMEOUT_SECONDS,
        auto_enroll_threshold: float = Config.AUTO_ENROLL_THRESHOLD,
        owns_pool: bool = False,
    ):
        """
        Args:
            pool: Worker pool; defaults to the process-wide ``get_pool()``
            owns_pool: Whether ``shutdown()`` also stops ``pool``. Leave False
                for a pool shared with other pipelines.
        """
        self.detector = detector
        self.embedder = embedder
        self.store = store
        self.fusion = fusion or FusionPolicy()
        self.matcher = matcher or GalleryMatcher(fusion_version=self.fusion.key)
        self.gallery = gallery or GalleryMaintainer(store, fusion_version=self.fusion.key)
        self.pool = pool or get_pool()
        self.detect_timeout = detect_timeout
        self.auto_enroll_threshold = auto_enroll_threshold
        self.owns_pool = owns_pool

        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()

    @classmethod
    def from_config(cls, database_url: str = Config.DATABASE_URL) -> "FacePipeline":
        """Build a pipeline with every component configured from ``Config``."""
        session_factory = create_session_factory(database_url)
        init_db(session_factory)
        return cls(
            detector=DetectorService(),
            embedder=EmbeddingService(),
            store=FaceStore(session_factory),
            pool=InferencePool(),
            owns_pool=True,
        )

    # =========================================================================
    # STAGES
    # =========================================================================

    def detect_faces(self, image: np.ndarray, photo_id: int, event_id: int) -> Tuple[List[FaceRecord], Optional[str]]:
        """
        Detect faces and wrap them as DETECTED Face records.

        Returns:
            Tuple of (faces, decoder warning or None)
        """
        with photo_context(photo_id):
            detections, warning = self.detector.detect(image)

        faces = []
        for det in detections:
            face = FaceRecord(
                photo_id=photo_id,
                event_id=event_id,
                bbox=BoundingBox(left=det["left"], top=det["top"], width=det["width"], height=det["height"]),
                landmarks=det["landmarks"],
                pose=estimate_pose(det["landmarks"]),
                score=det["score"],
            )
            faces.append(face.transition(FaceState.DETECTED))
        return faces, warning

    def extract_embeddings(
        self,
        image: np.ndarray,
        faces: List[FaceRecord],
        person_boxes: Optional[Sequence[Sequence[float]]] = None,
    ) -> List[FaceRecord]:
        """
        Compute identity and appearance embeddings, one pool task per face.

        Faces without an identity embedding end up EMBEDDING_FAILED; the
        rest become EMBEDDED.
        """
        futures = [
            self.pool.submit_embedding(
                self._extract_one, face, image, _person_box_for(face.bbox, person_boxes)
            )
            for face in faces
        ]

        for face, future in zip(faces, futures):
            identity, appearance = future.result()
            face.identity_embedding = identity.tolist() if identity is not None else None
            face.appearance_embedding = appearance.tolist() if appearance is not None else None
            if identity is None:
                face.transition(FaceState.EMBEDDING_FAILED)
            else:
                face.transition(FaceState.EMBEDDED)
        return faces

    def _extract_one(self, face: FaceRecord, image: np.ndarray, person_box):
        with photo_context(face.photo_id):
            return self.embedder.extract(image, face.bbox, face.landmarks, person_box)

    def recognize(self, faces: List[FaceRecord], context: RecognitionContext) -> List[FaceRecord]:
        """
        Fuse each face's embeddings and match them against the event gallery.

        Matching uses one gallery snapshot for the whole photo.
        """
        if not faces:
            return faces
        snapshot = self.store.gallery_snapshot(context.event_id, self.fusion.key, context.tag_ids)

        for face in faces:
            if face.state == FaceState.EMBEDDING_FAILED:
                face.match_reason = "no_embedding"
                face.transition(FaceState.UNMATCHED)
                continue

            identity = np.asarray(face.identity_embedding, dtype=np.float32)
            appearance = (
                np.asarray(face.appearance_embedding, dtype=np.float32)
                if face.appearance_embedding is not None else None
            )
            fused = self.fusion.fuse(identity, appearance)
            face.fused_embedding = fused.tolist()

            result = self.matcher.match(fused, snapshot, context.tag_ids)
            face.fused_score = result.score
            if result.matched:
                face.recognized_tag_id = result.tag_id
                face.match_reason = None
                face.transition(FaceState.MATCHED)
            else:
                face.match_reason = result.reason
                face.transition(FaceState.UNMATCHED)
        return faces

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def process_photo(
        self,
        photo_id: int,
        image: Union[bytes, np.ndarray],
        context: RecognitionContext,
        width: Optional[int] = None,
        height: Optional[int] = None,
        person_boxes: Optional[Sequence[Sequence[float]]] = None,
        timeout: Optional[float] = None,
    ) -> PhotoResult:
        """
        Detect, embed, recognize and persist the faces of one photo.

        Args:
            photo_id: Photo id owned by the caller
            image: Encoded image bytes or a decoded BGR array
            context: Event scope and valid tags for matching
            width, height: Declared photo size; a mismatch is reported as a warning
            person_boxes: Optional person boxes (x1, y1, x2, y2) for appearance crops
            timeout: Detection budget in seconds (defaults to the pipeline's)

        Returns:
            PhotoResult. ``timed_out`` results have no faces and nothing was stored.

        Raises:
            DetectorUnavailable / EmbedderUnavailable: A model cannot be loaded
            ValueError: The image cannot be decoded
        """
        start = time.perf_counter()
        timeout = self.detect_timeout if timeout is None else timeout

        with photo_context(photo_id):
            # Surface missing models before any work is queued
            self.detector.initialize()
            self.embedder.initialize()

            if isinstance(image, (bytes, bytearray, memoryview)):
                image = decode_image(bytes(image))

            warnings: List[str] = []
            actual_h, actual_w = image.shape[:2]
            if (width is not None and width != actual_w) or (height is not None and height != actual_h):
                warnings.append(f"declared_size_mismatch: declared {width}x{height}, decoded {actual_w}x{actual_h}")
                logger.warning(warnings[-1])

            try:
                faces, warning = self.pool.run_with_timeout(
                    self.detect_faces, timeout, image, photo_id, context.event_id
                )
            except DetectionTimeout as e:
                logger.warning(f"Photo {photo_id}: {e}")
                return PhotoResult(
                    photo_id=photo_id,
                    event_id=context.event_id,
                    status="timeout",
                    timed_out=True,
                    warnings=warnings + [str(e)],
                    processing_time_ms=int((time.perf_counter() - start) * 1000),
                )
            if warning:
                warnings.append(warning)

            self.extract_embeddings(image, faces, person_boxes)
            self.recognize(faces, context)
            faces = self.store.save_photo_faces(faces)

            events = []
            for face in faces:
                if (
                    face.state == FaceState.MATCHED
                    and face.fused_score is not None
                    and face.fused_score >= self.auto_enroll_threshold
                ):
                    events.append(self._gallery_event(face, face.recognized_tag_id, context.event_id, "auto"))
            for event in events:
                self._queue_gallery_update(event)

            matched = sum(1 for f in faces if f.state == FaceState.MATCHED)
            logger.info(f"Photo {photo_id}: {len(faces)} faces, {matched} matched, "
                        f"{len(events)} gallery updates queued")

            return PhotoResult(
                photo_id=photo_id,
                event_id=context.event_id,
                faces=faces,
                warnings=warnings,
                gallery_events=events,
                processing_time_ms=int((time.perf_counter() - start) * 1000),
            )

    def resolve_manually(
        self,
        face_id: int,
        tag_id: Optional[int],
        tag_event_id: Optional[int] = None,
    ) -> FaceRecord:
        """
        Apply a human decision to a stored face.

        Manual resolution overrides any automatic match. Labelling a face
        with a tag queues a gallery update for that tag, which also moves the
        face's vectors out of other tags. Clearing the label removes them
        right away.

        Args:
            face_id: Stored face id
            tag_id: The tag a human assigned, or None to clear the label
            tag_event_id: Event the tag belongs to (defaults to the face's event)

        Raises:
            KeyError: Unknown face id
        """
        face = self.store.get_face(face_id)
        if face is None:
            raise KeyError(f"Face {face_id} not found")

        face.transition(FaceState.MANUALLY_RESOLVED)
        face.recognized_tag_id = tag_id
        face.match_reason = None
        self.store.update_face(face)
        logger.info(f"Face {face_id} manually resolved to tag {tag_id}")

        if tag_id is not None and face.fused_embedding is not None:
            event_id = tag_event_id if tag_event_id is not None else face.event_id
            self._queue_gallery_update(self._gallery_event(face, tag_id, event_id, "manual"))
        else:
            self.gallery.retract_face(face.id, keep_tag_id=tag_id)
        return face

    def _gallery_event(self, face: FaceRecord, tag_id: int, event_id: int, source: str) -> GalleryUpdateEvent:
        return GalleryUpdateEvent(
            tag_id=tag_id,
            event_id=event_id,
            face_id=face.id,
            face_event_id=face.event_id,
            embedding=face.fused_embedding,
            fusion_version=self.fusion.key,
            source=source,
        )

    def _queue_gallery_update(self, event: GalleryUpdateEvent) -> Future:
        with self._pending_lock:
            future = self.pool.submit_gallery(self.gallery.apply, event)
            self._pending.append(future)
        future.add_done_callback(self._gallery_update_done)
        return future

    def _gallery_update_done(self, future: Future):
        with self._pending_lock:
            if future in self._pending:
                self._pending.remove(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Gallery update failed: {future.exception()}")

    def flush_gallery_updates(self, timeout: Optional[float] = None):
        """
        Wait for the gallery updates that are still outstanding.

        Finished updates leave the queue on their own and their failures
        are logged when they happen.

        Raises:
            The first error raised by a waited-on update, after all have finished
        """
        with self._pending_lock:
            pending = list(self._pending)

        first_error = None
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception as e:
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def health(self) -> Dict:
        """Model availability plus the active fusion configuration."""
        detector = self.detector.health()
        embedder = self.embedder.health()
        return {
            "ok": detector["ok"] and embedder["ok"],
            "detector": detector,
            "embedder": embedder,
            "fusion": self.fusion.describe(),
        }

    def shutdown(self):
        """Finish queued gallery updates, stop an owned pool and release the models."""
        try:
            self.flush_gallery_updates()
        finally:
            if self.owns_pool:
                self.pool.shutdown(wait=True)
            self.detector.shutdown()
            self.embedder.shutdown()
