"""In-memory stand-ins for onnxruntime sessions, plus tensor builders."""

import time
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence

import numpy as np

from face_pipeline.variants import DetectorVariant, HeadSpec


class FakeSession:
    """Minimal onnxruntime.InferenceSession look-alike returning fixed outputs."""

    def __init__(
        self,
        outputs: Sequence[np.ndarray],
        output_names: Optional[Sequence[str]] = None,
        input_name: str = "input.1",
        delay: float = 0.0,
    ):
        self.outputs = list(outputs)
        self.output_names = list(output_names) if output_names else [str(i) for i in range(len(self.outputs))]
        self.input_name = input_name
        self.delay = delay
        self.calls: List[Dict[str, np.ndarray]] = []

    def get_inputs(self):
        return [SimpleNamespace(name=self.input_name)]

    def get_outputs(self):
        return [SimpleNamespace(name=n) for n in self.output_names]

    def run(self, output_names, feed):
        self.calls.append(feed)
        if self.delay:
            time.sleep(self.delay)
        return [o.copy() for o in self.outputs]


class FakeEmbeddingSession(FakeSession):
    """Returns the same embedding for every crop."""

    def __init__(self, vector: np.ndarray):
        super().__init__([np.asarray(vector, dtype=np.float32).reshape(1, -1)], output_names=["embedding"])


def small_variant(input_size: int = 64, num_anchors: int = 2, activation: str = "none") -> DetectorVariant:
    """Indexed-head SCRFD-style variant on a small canvas."""
    strides = (8, 16, 32)
    n = len(strides)
    heads = tuple(HeadSpec(stride=s, score=i, bbox=n + i, kps=2 * n + i) for i, s in enumerate(strides))
    return DetectorVariant(
        name="test_scrfd",
        version="0",
        heads=heads,
        input_size=input_size,
        num_anchors=num_anchors,
        score_activation=activation,
    )


# Frontal landmark offsets (stride units) around an anchor centre
FRONTAL_KPS = [-1.0, -0.6, 1.0, -0.6, 0.0, 0.2, -0.8, 1.0, 0.8, 1.0]


def head_outputs(variant: DetectorVariant, hits: Sequence[dict], fill_score: float = 0.0) -> List[np.ndarray]:
    """
    Build raw head tensors ([scores..., bboxes..., kps...]) with ``hits`` set.

    Each hit: {"stride", "row", "col", "anchor" (opt), "score", "ltrb", "kps" (opt)}
    with distances and keypoint offsets in stride units.
    """
    scores, boxes, kps = [], [], []
    for head in variant.heads:
        grid = variant.input_size // head.stride
        positions = grid * grid * variant.num_anchors
        scores.append(np.full((positions, 1), fill_score, dtype=np.float32))
        boxes.append(np.zeros((positions, 4), dtype=np.float32))
        kps.append(np.zeros((positions, 10), dtype=np.float32))

    for hit in hits:
        i = variant.strides.index(hit["stride"])
        grid = variant.input_size // hit["stride"]
        idx = (hit["row"] * grid + hit["col"]) * variant.num_anchors + hit.get("anchor", 0)
        scores[i][idx, 0] = hit["score"]
        boxes[i][idx] = hit["ltrb"]
        kps[i][idx] = hit.get("kps", FRONTAL_KPS)

    return scores + boxes + kps


def unit(vector) -> np.ndarray:
    v = np.asarray(vector, dtype=np.float32)
    return v / np.linalg.norm(v)


def vector_at_cosine(base: np.ndarray, cosine: float, seed: int = 0) -> np.ndarray:
    """Unit vector whose cosine similarity with unit ``base`` is exactly ``cosine``."""
    rng = np.random.default_rng(seed)
    noise = rng.normal(size=base.shape[0]).astype(np.float64)
    base = np.asarray(base, dtype=np.float64)
    ortho = noise - np.dot(noise, base) * base
    ortho /= np.linalg.norm(ortho)
    return (cosine * base + np.sqrt(1.0 - cosine ** 2) * ortho).astype(np.float32)
