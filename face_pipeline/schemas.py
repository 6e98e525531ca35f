from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import InvalidStateTransition


# Face lifecycle
class FaceState(str, Enum):
    PENDING = "pending"
    DETECTED = "detected"
    EMBEDDED = "embedded"
    EMBEDDING_FAILED = "embedding_failed"
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    MANUALLY_RESOLVED = "manually_resolved"


# MANUALLY_RESOLVED is reachable from every state (see FaceRecord.transition)
ALLOWED_TRANSITIONS: Dict[FaceState, FrozenSet[FaceState]] = {
    FaceState.PENDING: frozenset({FaceState.DETECTED}),
    FaceState.DETECTED: frozenset({FaceState.EMBEDDED, FaceState.EMBEDDING_FAILED}),
    FaceState.EMBEDDED: frozenset({FaceState.MATCHED, FaceState.UNMATCHED}),
    FaceState.EMBEDDING_FAILED: frozenset({FaceState.UNMATCHED}),
    FaceState.MATCHED: frozenset(),
    FaceState.UNMATCHED: frozenset(),
    FaceState.MANUALLY_RESOLVED: frozenset(),
}

TERMINAL_STATES = frozenset({FaceState.MATCHED, FaceState.UNMATCHED, FaceState.MANUALLY_RESOLVED})


class BoundingBox(BaseModel):
    left: float = Field(ge=0)
    top: float = Field(ge=0)
    width: float = Field(gt=0)
    height: float = Field(gt=0)

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height

    def as_xyxy(self) -> List[float]:
        return [self.left, self.top, self.right, self.bottom]


class HeadPose(BaseModel):
    yaw: float  # degrees, positive = face turned to the image right
    pitch: float  # degrees, positive = looking down
    roll: float  # degrees, positive = tilted clockwise


class FaceRecord(BaseModel):
    id: Optional[int] = None
    photo_id: int
    event_id: int
    bbox: BoundingBox
    landmarks: Optional[List[List[float]]] = None  # 5 x [x, y]
    pose: Optional[HeadPose] = None
    score: float
    identity_embedding: Optional[List[float]] = None
    appearance_embedding: Optional[List[float]] = None
    fused_embedding: Optional[List[float]] = None
    fused_score: Optional[float] = None
    recognized_tag_id: Optional[int] = None
    state: FaceState = FaceState.PENDING
    match_reason: Optional[str] = None  # why the face is unmatched, when it is

    def transition(self, new_state: FaceState) -> "FaceRecord":
        """Move to ``new_state`` or raise InvalidStateTransition."""
        if new_state != FaceState.MANUALLY_RESOLVED and new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(f"Face {self.id}: {self.state.value} -> {new_state.value} is not allowed")
        self.state = new_state
        return self


class RecognitionContext(BaseModel):
    event_id: int
    # Tags valid for matching in this event; None means every tag of the event
    tag_ids: Optional[List[int]] = None


# Gallery
class GalleryEntry(BaseModel):
    id: Optional[int] = None
    tag_id: int
    event_id: int
    embedding: List[float]
    source_face_id: Optional[int] = None
    fusion_version: str
    created_at: Optional[datetime] = None


class GalleryUpdateEvent(BaseModel):
    tag_id: int
    event_id: int
    face_id: Optional[int] = None
    face_event_id: Optional[int] = None  # event of the face that produced the vector
    embedding: List[float]
    fusion_version: str
    source: Literal["auto", "manual"]


class GalleryUpdateResult(BaseModel):
    tag_id: int
    accepted: bool
    reason: str  # 'added', 'outlier', 'duplicate', 'superseded', 'scope_mismatch', 'version_mismatch'
    entry_id: Optional[int] = None
    evicted_ids: List[int] = []
    retracted_ids: List[int] = []  # the face's entries removed from other tags
    similarity: Optional[float] = None


# Per-photo result
class PhotoResult(BaseModel):
    photo_id: int
    event_id: int
    status: Literal["ok", "timeout"] = "ok"
    faces: List[FaceRecord] = []
    timed_out: bool = False
    warnings: List[str] = []
    gallery_events: List[GalleryUpdateEvent] = []
    processing_time_ms: int = 0
