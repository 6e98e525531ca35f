"""
Non-Max Suppression
===================

Greedy suppression over decoded candidates. Candidates are visited in
descending score order (stable for ties, so the earlier candidate wins);
each one is kept unless it overlaps an already kept box by more than the
IoU threshold.

Guarantee: any two boxes in the output have IoU <= threshold.
"""

from typing import Dict, List

from .config import Config


def _corners(c: Dict):
    return c["left"], c["top"], c["left"] + c["width"], c["top"] + c["height"]


def iou(a: Dict, b: Dict) -> float:
    """Intersection over union of two candidate boxes (left/top/width/height)."""
    ax1, ay1, ax2, ay2 = _corners(a)
    bx1, by1, bx2, by2 = _corners(b)

    inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
    inter = inter_w * inter_h
    if inter <= 0.0:
        return 0.0

    union = a["width"] * a["height"] + b["width"] * b["height"] - inter
    if union <= 0.0:
        return 0.0
    return inter / union


def non_max_suppression(
    candidates: List[Dict],
    iou_threshold: float = Config.NMS_IOU_THRESHOLD,
    max_detections: int = Config.MAX_DETECTIONS,
) -> List[Dict]:
    """
    Greedy NMS.

    Args:
        candidates: Candidate dicts (any order)
        iou_threshold: Discard a candidate whose IoU with a kept box exceeds this
        max_detections: Upper bound on the number of kept boxes

    Returns:
        Kept candidates in descending score order
    """
    ordered = sorted(candidates, key=lambda c: -c["score"])
    kept: List[Dict] = []
    for cand in ordered:
        if len(kept) >= max_detections:
            break
        if all(iou(cand, k) <= iou_threshold for k in kept):
            kept.append(cand)
    return kept
