"""
Face Store
==========

Persistence for Face records and gallery entries on top of SQLAlchemy.

All faces of one photo are written in one transaction, after detection and
embedding have finished, so a timed-out or failed photo leaves no rows.
Gallery appends and their evictions also share one transaction.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from .database import FaceModel, GalleryEntryModel, session_scope
from .schemas import BoundingBox, FaceRecord, FaceState, GalleryEntry, HeadPose

logger = logging.getLogger(__name__)


def _face_to_record(row: FaceModel) -> FaceRecord:
    pose = None
    if row.yaw is not None and row.pitch is not None and row.roll is not None:
        pose = HeadPose(yaw=row.yaw, pitch=row.pitch, roll=row.roll)
    return FaceRecord(
        id=row.id,
        photo_id=row.photo_id,
        event_id=row.event_id,
        bbox=BoundingBox(**row.bbox),
        landmarks=row.landmarks,
        pose=pose,
        score=row.face_score,
        identity_embedding=row.face_embedding,
        appearance_embedding=row.appearance_embedding,
        fused_embedding=row.fused_embedding,
        fused_score=row.fused_score,
        recognized_tag_id=row.recognized_tag_id,
        state=FaceState(row.state),
        match_reason=row.match_reason,
    )


def _apply_record(row: FaceModel, face: FaceRecord) -> FaceModel:
    row.photo_id = face.photo_id
    row.event_id = face.event_id
    row.bbox = face.bbox.model_dump()
    row.landmarks = face.landmarks
    row.yaw = face.pose.yaw if face.pose else None
    row.pitch = face.pose.pitch if face.pose else None
    row.roll = face.pose.roll if face.pose else None
    row.face_embedding = face.identity_embedding
    row.appearance_embedding = face.appearance_embedding
    row.fused_embedding = face.fused_embedding
    row.recognized_tag_id = face.recognized_tag_id
    row.face_score = face.score
    row.fused_score = face.fused_score
    row.state = face.state.value
    row.match_reason = face.match_reason
    return row


def _entry_to_schema(row: GalleryEntryModel) -> GalleryEntry:
    return GalleryEntry(
        id=row.id,
        tag_id=row.tag_id,
        event_id=row.event_id,
        embedding=row.embedding,
        source_face_id=row.source_face_id,
        fusion_version=row.fusion_version,
        created_at=row.created_at,
    )


class FaceStore:
    """Reads and writes Face rows and gallery entries."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # =========================================================================
    # FACES
    # =========================================================================

    def save_photo_faces(self, faces: List[FaceRecord]) -> List[FaceRecord]:
        """Insert all faces of one photo in a single transaction; returns them with ids."""
        if not faces:
            return []
        with session_scope(self.session_factory) as db:
            rows = [_apply_record(FaceModel(), face) for face in faces]
            db.add_all(rows)
            db.flush()
            saved = [face.model_copy(update={"id": row.id}) for face, row in zip(faces, rows)]
        logger.debug(f"Saved {len(saved)} faces for photo {faces[0].photo_id}")
        return saved

    def get_face(self, face_id: int) -> Optional[FaceRecord]:
        with session_scope(self.session_factory) as db:
            row = db.get(FaceModel, face_id)
            return _face_to_record(row) if row is not None else None

    def list_faces(self, photo_id: Optional[int] = None, event_id: Optional[int] = None) -> List[FaceRecord]:
        with session_scope(self.session_factory) as db:
            query = select(FaceModel).order_by(FaceModel.id)
            if photo_id is not None:
                query = query.where(FaceModel.photo_id == photo_id)
            if event_id is not None:
                query = query.where(FaceModel.event_id == event_id)
            return [_face_to_record(row) for row in db.scalars(query)]

    def update_face(self, face: FaceRecord) -> FaceRecord:
        """Overwrite a stored face (manual resolution)."""
        if face.id is None:
            raise ValueError("Cannot update a face that was never saved")
        with session_scope(self.session_factory) as db:
            row = db.get(FaceModel, face.id)
            if row is None:
                raise KeyError(f"Face {face.id} not found")
            _apply_record(row, face)
        return face

    # =========================================================================
    # GALLERY
    # =========================================================================

    def gallery_snapshot(
        self,
        event_id: int,
        fusion_version: Optional[str] = None,
        tag_ids: Optional[Iterable[int]] = None,
    ) -> List[GalleryEntry]:
        """All gallery entries of an event (optionally one fusion key / some tags), oldest first."""
        with session_scope(self.session_factory) as db:
            query = select(GalleryEntryModel).where(GalleryEntryModel.event_id == event_id)
            if fusion_version is not None:
                query = query.where(GalleryEntryModel.fusion_version == fusion_version)
            if tag_ids is not None:
                query = query.where(GalleryEntryModel.tag_id.in_(list(tag_ids)))
            query = query.order_by(GalleryEntryModel.id)
            return [_entry_to_schema(row) for row in db.scalars(query)]

    def list_gallery_entries(self, tag_id: int, fusion_version: Optional[str] = None) -> List[GalleryEntry]:
        """Entries of one tag, oldest first."""
        with session_scope(self.session_factory) as db:
            query = select(GalleryEntryModel).where(GalleryEntryModel.tag_id == tag_id)
            if fusion_version is not None:
                query = query.where(GalleryEntryModel.fusion_version == fusion_version)
            query = query.order_by(GalleryEntryModel.created_at, GalleryEntryModel.id)
            return [_entry_to_schema(row) for row in db.scalars(query)]

    def append_gallery_entry(self, entry: GalleryEntry, evict_ids: Iterable[int] = ()) -> GalleryEntry:
        """Insert ``entry`` and delete ``evict_ids`` in one transaction."""
        evict_ids = list(evict_ids)
        with session_scope(self.session_factory) as db:
            if evict_ids:
                for row in db.scalars(select(GalleryEntryModel).where(GalleryEntryModel.id.in_(evict_ids))):
                    db.delete(row)
            row = GalleryEntryModel(
                tag_id=entry.tag_id,
                event_id=entry.event_id,
                embedding=list(entry.embedding),
                source_face_id=entry.source_face_id,
                fusion_version=entry.fusion_version,
            )
            db.add(row)
            db.flush()
            db.refresh(row)
            return _entry_to_schema(row)

    def tags_with_face(self, face_id: int) -> List[int]:
        """Tags whose gallery holds a vector taken from ``face_id``."""
        with session_scope(self.session_factory) as db:
            query = (
                select(GalleryEntryModel.tag_id)
                .where(GalleryEntryModel.source_face_id == face_id)
                .distinct()
                .order_by(GalleryEntryModel.tag_id)
            )
            return list(db.scalars(query))

    def remove_face_entries(self, face_id: int, tag_id: int) -> List[int]:
        """Delete the entries of ``tag_id`` that came from ``face_id``; returns their ids."""
        with session_scope(self.session_factory) as db:
            rows = list(db.scalars(
                select(GalleryEntryModel).where(
                    GalleryEntryModel.source_face_id == face_id,
                    GalleryEntryModel.tag_id == tag_id,
                )
            ))
            removed = [row.id for row in rows]
            for row in rows:
                db.delete(row)
        return removed

    def remove_tag(self, tag_id: int) -> int:
        """Drop every gallery entry of a tag; returns how many were removed."""
        with session_scope(self.session_factory) as db:
            rows = list(db.scalars(select(GalleryEntryModel).where(GalleryEntryModel.tag_id == tag_id)))
            for row in rows:
                db.delete(row)
            return len(rows)
