"""
FAISS Search Module
===================

This module matches a face's fused embedding against the gallery of known
tags using FAISS (Facebook AI Similarity Search).

EDUCATIONAL NOTES:
------------------
Galleries are small (a few dozen tags per event, at most 20 vectors per
tag), so we use IndexFlatIP:
- "Flat" = stores all vectors in a flat array (exact search)
- "IP" = Inner Product (for cosine similarity on normalized vectors)

One tag can own several gallery vectors. A tag's score for a face is the
best similarity among its own vectors, and the match decision compares the
best tag with the runner-up TAG (not the runner-up vector, which is
usually another vector of the same person).

MATCH RULE:
-----------
    best >= threshold and (best - runner_up) >= margin  ->  matched
    best >= threshold and (best - runner_up) <  margin  ->  ambiguous (unmatched)
    best <  threshold                                   ->  unmatched

USAGE:
------
    from face_pipeline.search import GalleryMatcher

    matcher = GalleryMatcher(threshold=0.6, margin=0.03, fusion_version="weighted_concat:v1")
    result = matcher.match(fused_embedding, gallery_entries)
    # result.tag_id is None unless the face is matched
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from .config import Config
from .schemas import GalleryEntry

logger = logging.getLogger(__name__)


class FaceIndex:
    """
    Exact inner-product index over a snapshot of gallery entries.

    Built per match call from the entries visible to that call, so a search
    never sees a half-applied gallery update.
    """

    def __init__(self, dimension: int):
        self.dimension = dimension
        self.index = faiss.IndexFlatIP(dimension)
        self.entries: List[GalleryEntry] = []

    def add_entries(self, entries: Iterable[GalleryEntry]) -> int:
        """
        Add gallery entries; entries of another dimension are skipped.

        Returns:
            Number of entries added
        """
        vectors = []
        for entry in entries:
            if len(entry.embedding) != self.dimension:
                logger.warning(
                    f"Skipping gallery entry {entry.id} (tag {entry.tag_id}): "
                    f"{len(entry.embedding)} values, index expects {self.dimension}"
                )
                continue
            vectors.append(entry.embedding)
            self.entries.append(entry)

        if not vectors:
            return 0

        matrix = np.ascontiguousarray(np.asarray(vectors, dtype=np.float32))
        faiss.normalize_L2(matrix)
        self.index.add(matrix)
        return len(vectors)

    def search(self, query_embedding: np.ndarray, k: Optional[int] = None) -> List[Tuple[GalleryEntry, float]]:
        """
        Top-k entries by cosine similarity (all entries when ``k`` is None).

        Returns:
            List of (entry, similarity), highest similarity first
        """
        if self.index.ntotal == 0:
            return []

        query = np.ascontiguousarray(np.asarray(query_embedding, dtype=np.float32).reshape(1, -1))
        faiss.normalize_L2(query)

        k = self.index.ntotal if k is None else min(k, self.index.ntotal)
        distances, indices = self.index.search(query, k)

        results = []
        for dist, idx in zip(distances[0], indices[0]):
            # FAISS returns -1 for empty slots
            if idx < 0 or idx >= len(self.entries):
                continue
            results.append((self.entries[idx], float(np.clip(dist, -1.0, 1.0))))
        return results

    def best_per_tag(self, query_embedding: np.ndarray) -> List[Tuple[int, float]]:
        """
        Best similarity per tag.

        Returns:
            List of (tag_id, similarity), best first; ties ordered by tag id
        """
        best: Dict[int, float] = {}
        for entry, sim in self.search(query_embedding):
            if entry.tag_id not in best or sim > best[entry.tag_id]:
                best[entry.tag_id] = sim
        return sorted(best.items(), key=lambda item: (-item[1], item[0]))

    @property
    def total_entries(self) -> int:
        return self.index.ntotal


@dataclass
class MatchResult:
    """Outcome of matching one fused embedding against the gallery."""

    tag_id: Optional[int]
    score: Optional[float]  # best tag similarity, even when unmatched
    second_tag_id: Optional[int] = None
    second_score: Optional[float] = None
    ambiguous: bool = False
    reason: str = "matched"  # or: no_embedding, empty_gallery, below_threshold, ambiguous

    @property
    def matched(self) -> bool:
        return self.tag_id is not None


class GalleryMatcher:
    """Threshold + margin matcher over an event's gallery snapshot."""

    def __init__(
        self,
        threshold: float = Config.SIMILARITY_THRESHOLD,
        margin: float = Config.AMBIGUITY_MARGIN,
        fusion_version: Optional[str] = None,
    ):
        self.threshold = threshold
        self.margin = margin
        self.fusion_version = fusion_version

    def match(
        self,
        fused_embedding: Optional[np.ndarray],
        entries: Sequence[GalleryEntry],
        tag_ids: Optional[Iterable[int]] = None,
    ) -> MatchResult:
        """
        Match one face against gallery entries.

        Args:
            fused_embedding: The face's fused vector, or None
            entries: Gallery snapshot for the face's event
            tag_ids: Restrict matching to these tags (None = all tags)

        Returns:
            MatchResult; ``tag_id`` is set only for an unambiguous match
            at or above the threshold
        """
        if fused_embedding is None:
            return MatchResult(tag_id=None, score=None, reason="no_embedding")

        allowed = set(tag_ids) if tag_ids is not None else None
        candidates = [
            e for e in entries
            if (self.fusion_version is None or e.fusion_version == self.fusion_version)
            and (allowed is None or e.tag_id in allowed)
        ]

        index = FaceIndex(int(np.asarray(fused_embedding).reshape(-1).shape[0]))
        index.add_entries(candidates)
        ranked = index.best_per_tag(fused_embedding)
        if not ranked:
            return MatchResult(tag_id=None, score=None, reason="empty_gallery")

        best_tag, best = ranked[0]
        second_tag, second = ranked[1] if len(ranked) > 1 else (None, None)

        if best < self.threshold:
            return MatchResult(
                tag_id=None, score=best, second_tag_id=second_tag, second_score=second,
                reason="below_threshold",
            )

        if second is not None and best - second < self.margin:
            logger.info(
                f"Ambiguous match: tag {best_tag} ({best:.3f}) vs tag {second_tag} ({second:.3f})"
            )
            return MatchResult(
                tag_id=None, score=best, second_tag_id=second_tag, second_score=second,
                ambiguous=True, reason="ambiguous",
            )

        return MatchResult(tag_id=best_tag, score=best, second_tag_id=second_tag, second_score=second)
