"""
Head Decoder Module
===================

Turns the detector's raw per-stride score/bbox/landmark tensors into
candidate detections in original-image pixel coordinates.

For every stride declared by the detector variant:
1. Generate anchor centres on a (T/s x T/s) grid
2. Activate scores (if the export emits logits) and drop anchors below
   the confidence threshold
3. Decode (l, t, r, b) distances around the anchor centre, times stride
4. Decode 5 landmarks as (dx, dy) offsets from the centre, times stride
5. Undo the letterbox, clamp to the image and reject degenerate boxes

Candidates from all strides are sorted by score (stable, so equal scores
keep their decode order) and truncated to the detection cap before any
suppression happens.

A candidate is a dict:
    {"left", "top", "width", "height", "score", "landmarks"}
where landmarks is a list of five [x, y] pairs or None.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import Config
from .errors import DecodeShapeMismatch
from .preprocess import Letterbox
from .variants import DetectorVariant, HeadSpec, TensorId

logger = logging.getLogger(__name__)


def sigmoid(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    return (1.0 / (1.0 + np.exp(-np.clip(x, -60.0, 60.0)))).astype(np.float32)


def anchor_centers(stride: int, height: int, width: int, num_anchors: int = 1) -> np.ndarray:
    """Flattened (N, 2) anchor centres for one stride, row-major, anchors repeated per cell."""
    grid_y, grid_x = np.mgrid[:height, :width]
    centers = np.stack((grid_x, grid_y), axis=-1).reshape(-1, 2).astype(np.float32)
    centers *= float(stride)
    if num_anchors > 1:
        centers = np.repeat(centers, num_anchors, axis=0)
    return centers


def distance2bbox(centers: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """Decode (l, t, r, b) distances into xyxy boxes."""
    x1 = centers[:, 0] - distances[:, 0]
    y1 = centers[:, 1] - distances[:, 1]
    x2 = centers[:, 0] + distances[:, 2]
    y2 = centers[:, 1] + distances[:, 3]
    return np.stack((x1, y1, x2, y2), axis=-1)


def distance2kps(centers: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """Decode (dx, dy) keypoint offsets into (N, K, 2) absolute points."""
    num_points = distances.shape[1] // 2
    offsets = distances.reshape(-1, num_points, 2)
    return centers[:, np.newaxis, :] + offsets


class HeadDecoder:
    """
    Decoder for one detector variant.

    Args:
        variant: Declared detector variant (head table, anchors, activation)
        confidence_threshold: Minimum activated score per anchor
        max_candidates: Cap applied after score sort, before NMS
        min_box_size: Boxes with a side <= this (pixels) are dropped
    """

    def __init__(
        self,
        variant: DetectorVariant,
        confidence_threshold: float = Config.DETECTION_CONFIDENCE_THRESHOLD,
        max_candidates: int = Config.MAX_DETECTIONS,
        min_box_size: float = Config.MIN_BOX_SIZE,
    ):
        self.variant = variant
        self.confidence_threshold = float(confidence_threshold)
        self.max_candidates = int(max_candidates)
        self.min_box_size = float(min_box_size)

    def decode(
        self,
        outputs: Sequence[np.ndarray],
        output_names: Sequence[str],
        lb: Letterbox,
    ) -> Tuple[List[Dict], Optional[str]]:
        """
        Decode raw head tensors into capped, score-sorted candidates.

        Args:
            outputs: Tensors in session output order
            output_names: Output names, same order as ``outputs``
            lb: Letterbox used to build the detector input

        Returns:
            Tuple of (candidates, warning). On a head shape mismatch the
            candidates are empty and the warning describes the mismatch.
        """
        try:
            return self._decode(outputs, output_names, lb), None
        except DecodeShapeMismatch as e:
            logger.warning(f"Detector output does not match variant {self.variant.key}: {e}")
            return [], f"decode_shape_mismatch: {e}"

    def _tensor(
        self,
        outputs: Sequence[np.ndarray],
        output_names: Sequence[str],
        tensor_id: TensorId,
    ) -> np.ndarray:
        if isinstance(tensor_id, int):
            if not 0 <= tensor_id < len(outputs):
                raise DecodeShapeMismatch(f"output index {tensor_id} missing ({len(outputs)} outputs)")
            return np.asarray(outputs[tensor_id], dtype=np.float32)
        names = list(output_names)
        if tensor_id not in names:
            raise DecodeShapeMismatch(f"output '{tensor_id}' missing (have {names})")
        return np.asarray(outputs[names.index(tensor_id)], dtype=np.float32)

    def _head_arrays(
        self,
        outputs: Sequence[np.ndarray],
        output_names: Sequence[str],
        head: HeadSpec,
    ) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray], int]:
        grid = self.variant.input_size // head.stride
        positions = grid * grid * self.variant.num_anchors

        scores = self._tensor(outputs, output_names, head.score)
        if scores.size != positions:
            raise DecodeShapeMismatch(
                f"stride {head.stride} score head has {scores.size} values, expected {positions}"
            )
        bbox = self._tensor(outputs, output_names, head.bbox)
        if bbox.size != positions * 4:
            raise DecodeShapeMismatch(
                f"stride {head.stride} bbox head has {bbox.size} values, expected {positions * 4}"
            )
        kps = None
        if head.kps is not None:
            kps = self._tensor(outputs, output_names, head.kps)
            if kps.size != positions * 10:
                raise DecodeShapeMismatch(
                    f"stride {head.stride} landmark head has {kps.size} values, expected {positions * 10}"
                )
            kps = kps.reshape(positions, 10)
        return scores.reshape(positions), bbox.reshape(positions, 4), kps, grid

    def _decode(
        self,
        outputs: Sequence[np.ndarray],
        output_names: Sequence[str],
        lb: Letterbox,
    ) -> List[Dict]:
        box_chunks: List[np.ndarray] = []
        score_chunks: List[np.ndarray] = []
        kps_chunks: List[Optional[np.ndarray]] = []

        # Validate every head before decoding any of them
        heads = [(head, self._head_arrays(outputs, output_names, head)) for head in self.variant.heads]

        for head, (scores, bbox, kps, grid) in heads:
            if self.variant.score_activation == "sigmoid":
                scores = sigmoid(scores)

            keep = np.where(scores >= self.confidence_threshold)[0]
            if keep.size == 0:
                continue

            centers = anchor_centers(head.stride, grid, grid, self.variant.num_anchors)[keep]
            boxes = distance2bbox(centers, bbox[keep] * float(head.stride))
            box_chunks.append(lb.box_to_original(boxes))
            score_chunks.append(scores[keep].astype(np.float32))

            if kps is not None:
                points = distance2kps(centers, kps[keep] * float(head.stride))
                points = lb.to_original(points)
                points[..., 0] = np.clip(points[..., 0], 0.0, float(lb.width))
                points[..., 1] = np.clip(points[..., 1], 0.0, float(lb.height))
                kps_chunks.append(points)
            else:
                kps_chunks.append(None)

        if not box_chunks:
            return []

        candidates: List[Dict] = []
        for boxes, scores, points in zip(box_chunks, score_chunks, kps_chunks):
            for i in range(boxes.shape[0]):
                x1, y1, x2, y2 = (float(v) for v in boxes[i])
                width = x2 - x1
                height = y2 - y1
                if width <= self.min_box_size or height <= self.min_box_size:
                    continue
                candidates.append({
                    "left": x1,
                    "top": y1,
                    "width": width,
                    "height": height,
                    "score": float(scores[i]),
                    "landmarks": points[i].tolist() if points is not None else None,
                })

        # sorted() is stable: equal scores keep stride/anchor order
        candidates = sorted(candidates, key=lambda c: -c["score"])
        if len(candidates) > self.max_candidates:
            logger.debug(f"Truncating {len(candidates)} candidates to {self.max_candidates}")
            candidates = candidates[: self.max_candidates]
        return candidates
