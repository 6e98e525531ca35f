"""
Detector Variants
=================

Explicit, versioned descriptions of the detector exports this pipeline can
decode. Output heads are looked up by the tensor identity declared here
(an output name, or a positional index for exports with anonymous outputs),
never by guessing from tensor names at runtime.

Box parametrization (all variants below): SCRFD distance-to-edges. Each
anchor centre sits at (col * stride, row * stride) on a (T/stride)^2 grid,
repeated ``num_anchors`` times per cell. The bbox head predicts
(left, top, right, bottom) distances in stride units; the landmark head
predicts (dx, dy) offsets in stride units for 5 keypoints.

Adding a variant: validate its decoded boxes against reference outputs from
the exporting toolkit before deploying it. A table entry is a claim about
one specific ONNX file, not about SCRFD in general.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

TensorId = Union[str, int]


@dataclass(frozen=True)
class HeadSpec:
    """Tensor identities of the score/bbox/landmark heads for one stride."""

    stride: int
    score: TensorId
    bbox: TensorId
    kps: Optional[TensorId] = None


@dataclass(frozen=True)
class DetectorVariant:
    """Everything needed to preprocess for and decode one detector export."""

    name: str
    version: str
    heads: Tuple[HeadSpec, ...]
    input_size: int = 640
    num_anchors: int = 2
    # "sigmoid" for exports that emit raw logits, "none" when the graph
    # already applies the activation
    score_activation: str = "sigmoid"
    mean: float = 127.5
    std: float = 128.0
    swap_rb: bool = True
    pad_value: int = 0

    @property
    def strides(self) -> Tuple[int, ...]:
        return tuple(h.stride for h in self.heads)

    @property
    def has_landmarks(self) -> bool:
        return all(h.kps is not None for h in self.heads)

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"


def _indexed_heads(strides: Tuple[int, ...], with_kps: bool = True) -> Tuple[HeadSpec, ...]:
    # insightface exports list outputs grouped by kind:
    # [score_s8, score_s16, score_s32, bbox_s8, ..., kps_s8, ...]
    n = len(strides)
    return tuple(
        HeadSpec(stride=s, score=i, bbox=n + i, kps=(2 * n + i) if with_kps else None)
        for i, s in enumerate(strides)
    )


def _named_heads(strides: Tuple[int, ...], with_kps: bool = True) -> Tuple[HeadSpec, ...]:
    return tuple(
        HeadSpec(stride=s, score=f"score_{s}", bbox=f"bbox_{s}", kps=f"kps_{s}" if with_kps else None)
        for s in strides
    )


DETECTOR_VARIANTS: Dict[str, DetectorVariant] = {
    # insightface model-zoo export: sigmoid baked into the graph
    "scrfd_2.5g_bnkps": DetectorVariant(
        name="scrfd_2.5g_bnkps",
        version="insightface-2021.05",
        heads=_indexed_heads((8, 16, 32)),
        num_anchors=2,
        score_activation="none",
    ),
    "scrfd_10g_bnkps": DetectorVariant(
        name="scrfd_10g_bnkps",
        version="insightface-2021.05",
        heads=_indexed_heads((8, 16, 32)),
        num_anchors=2,
        score_activation="none",
    ),
    # Re-export with named heads and raw logits (activation applied here)
    "scrfd_2.5g_named": DetectorVariant(
        name="scrfd_2.5g_named",
        version="1",
        heads=_named_heads((8, 16, 32)),
        num_anchors=2,
        score_activation="sigmoid",
    ),
    # Person-level variant used by the original deployment
    "scrfd_person_2.5g": DetectorVariant(
        name="scrfd_person_2.5g",
        version="insightface-2021.10",
        heads=_indexed_heads((8, 16, 32)),
        num_anchors=2,
        score_activation="none",
    ),
}


def get_variant(name: str) -> DetectorVariant:
    """Return the registered variant called ``name``."""
    try:
        return DETECTOR_VARIANTS[name]
    except KeyError:
        known = ", ".join(sorted(DETECTOR_VARIANTS))
        raise ValueError(f"Unknown detector variant: {name} (known: {known})") from None
