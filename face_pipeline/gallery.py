"""
Gallery Maintainer
==================

Keeps each tag's gallery: a bounded set of representative fused embeddings
that new faces are matched against.

POLICY:
-------
- At most ``max_entries`` vectors per tag (default 20). Adding to a full tag
  evicts the oldest entry (ties broken by lowest id).
- The first vector of a tag is always accepted. Later vectors must have a
  cosine similarity >= ``outlier_threshold`` to the tag's current centroid,
  otherwise they are rejected as likely mislabels.
- A face already in the tag's gallery is not added twice.
- The face and the tag must belong to the same event.
- A manual label is authoritative: the face's vectors are first removed from
  every other tag, and a late automatic update for a face a human has since
  relabeled is dropped as ``superseded``.

Updates to the same tag are serialized with a per-tag lock; different tags
update in parallel. Matching reads a snapshot from the store and never
sees a half-applied update because append + evict is one transaction.
"""

import logging
import threading
from typing import Dict, List, Optional

import numpy as np

from .config import Config
from .embedder import cosine_similarity, l2_normalize
from .schemas import FaceState, GalleryEntry, GalleryUpdateEvent, GalleryUpdateResult
from .store import FaceStore

logger = logging.getLogger(__name__)


def centroid_of(entries: List[GalleryEntry]) -> Optional[np.ndarray]:
    """Unit-length mean of the entries' vectors, or None for an empty list."""
    if not entries:
        return None
    matrix = np.asarray([e.embedding for e in entries], dtype=np.float32)
    return l2_normalize(matrix.mean(axis=0))


class GalleryMaintainer:
    """Applies gallery-update events to the store."""

    def __init__(
        self,
        store: FaceStore,
        fusion_version: str,
        max_entries: int = Config.GALLERY_MAX_ENTRIES,
        outlier_threshold: float = Config.GALLERY_OUTLIER_THRESHOLD,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.store = store
        self.fusion_version = fusion_version
        self.max_entries = max_entries
        self.outlier_threshold = outlier_threshold

        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _tag_lock(self, tag_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(tag_id)
            if lock is None:
                lock = self._locks[tag_id] = threading.Lock()
            return lock

    def centroid(self, tag_id: int) -> Optional[np.ndarray]:
        """Current centroid of a tag's gallery."""
        return centroid_of(self.store.list_gallery_entries(tag_id, self.fusion_version))

    def retract_face(self, face_id: int, keep_tag_id: Optional[int] = None) -> List[int]:
        """Remove a face's vectors from every tag except ``keep_tag_id``; returns the removed ids."""
        removed = []
        for tag_id in self.store.tags_with_face(face_id):
            if tag_id == keep_tag_id:
                continue
            with self._tag_lock(tag_id):
                removed.extend(self.store.remove_face_entries(face_id, tag_id))
        if removed:
            logger.info(f"Face {face_id}: removed {len(removed)} gallery entries from other tags")
        return removed

    def remove_tag(self, tag_id: int) -> int:
        """Drop a tag's whole gallery and forget its lock."""
        with self._tag_lock(tag_id):
            count = self.store.remove_tag(tag_id)
        with self._locks_guard:
            self._locks.pop(tag_id, None)
        return count

    def _superseded(self, event: GalleryUpdateEvent) -> bool:
        if event.source != "auto" or event.face_id is None:
            return False
        face = self.store.get_face(event.face_id)
        return (
            face is not None
            and face.state == FaceState.MANUALLY_RESOLVED
            and face.recognized_tag_id != event.tag_id
        )

    def apply(self, event: GalleryUpdateEvent) -> GalleryUpdateResult:
        """
        Add one labeled face's fused embedding to its tag's gallery.

        Returns:
            GalleryUpdateResult; ``accepted`` is False for outliers,
            duplicates and scope/version mismatches
        """
        tag_id = event.tag_id

        if event.face_event_id is not None and event.face_event_id != event.event_id:
            logger.warning(f"Gallery update for tag {tag_id} rejected: face from event "
                           f"{event.face_event_id}, tag in event {event.event_id}")
            return GalleryUpdateResult(tag_id=tag_id, accepted=False, reason="scope_mismatch")

        if event.fusion_version != self.fusion_version:
            logger.warning(f"Gallery update for tag {tag_id} rejected: fusion key "
                           f"{event.fusion_version} != {self.fusion_version}")
            return GalleryUpdateResult(tag_id=tag_id, accepted=False, reason="version_mismatch")

        embedding = l2_normalize(event.embedding)

        retracted = []
        if event.source == "manual" and event.face_id is not None:
            retracted = self.retract_face(event.face_id, keep_tag_id=tag_id)

        with self._tag_lock(tag_id):
            if self._superseded(event):
                logger.info(f"Auto update of tag {tag_id} from face {event.face_id} dropped: "
                            f"face was relabeled manually")
                return GalleryUpdateResult(tag_id=tag_id, accepted=False, reason="superseded")

            entries = self.store.list_gallery_entries(tag_id, self.fusion_version)

            if any(e.event_id != event.event_id for e in entries):
                logger.warning(f"Gallery update for tag {tag_id} rejected: tag belongs to another event")
                return GalleryUpdateResult(tag_id=tag_id, accepted=False, reason="scope_mismatch",
                                           retracted_ids=retracted)

            if event.face_id is not None and any(e.source_face_id == event.face_id for e in entries):
                return GalleryUpdateResult(
                    tag_id=tag_id, accepted=False, reason="duplicate", retracted_ids=retracted
                )

            similarity = None
            centroid = centroid_of(entries)
            if centroid is not None:
                similarity = cosine_similarity(embedding, centroid)
                if similarity < self.outlier_threshold:
                    logger.info(f"Outlier rejected for tag {tag_id}: similarity {similarity:.3f} "
                                f"< {self.outlier_threshold} (face {event.face_id}, {event.source})")
                    return GalleryUpdateResult(
                        tag_id=tag_id, accepted=False, reason="outlier", similarity=similarity,
                        retracted_ids=retracted,
                    )

            overflow = len(entries) + 1 - self.max_entries
            evicted = [e.id for e in entries[:overflow]] if overflow > 0 else []

            saved = self.store.append_gallery_entry(
                GalleryEntry(
                    tag_id=tag_id,
                    event_id=event.event_id,
                    embedding=embedding.tolist(),
                    source_face_id=event.face_id,
                    fusion_version=self.fusion_version,
                ),
                evict_ids=evicted,
            )

        logger.info(f"Gallery tag {tag_id}: added entry {saved.id} from face {event.face_id} "
                    f"({event.source}), evicted {len(evicted)}")
        return GalleryUpdateResult(
            tag_id=tag_id,
            accepted=True,
            reason="added",
            entry_id=saved.id,
            evicted_ids=evicted,
            similarity=similarity,
            retracted_ids=retracted,
        )
