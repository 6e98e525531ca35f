"""
Embedding Fusion
================

Combines the identity and appearance embeddings of a face into one fused
vector, which is what gets matched against the gallery.

POLICIES:
---------
weighted_concat (default)
    fused = normalize([sqrt(w_id) * identity, sqrt(w_app) * appearance])
    With unit-length inputs and w_id + w_app = 1, the cosine between two
    fused vectors is exactly w_id * cos(identity) + w_app * cos(appearance).
    A missing appearance embedding contributes zeros.

weighted_sum
    fused = normalize(w_id * identity + w_app * appearance), the shorter
    vector zero-padded to the longer length. Cheaper to store, but mixes
    two unrelated embedding spaces dimension by dimension.

identity_only
    fused = identity. Appearance is ignored.

The policy name and version form the fusion key (e.g. "weighted_concat:v1")
stored on every gallery entry. Vectors built under different keys are never
compared. Changing the weights means bumping FACE_FUSION_VERSION.
"""

from typing import Dict, Optional

import numpy as np

from .config import Config
from .embedder import l2_normalize

POLICIES = ("weighted_concat", "weighted_sum", "identity_only")


class FusionPolicy:
    """A named, versioned fusion formula with fixed weights."""

    def __init__(
        self,
        name: str = Config.FUSION_POLICY,
        version: str = Config.FUSION_VERSION,
        identity_weight: float = Config.IDENTITY_WEIGHT,
        appearance_weight: float = Config.APPEARANCE_WEIGHT,
        identity_dim: int = Config.IDENTITY_EMBEDDING_DIM,
        appearance_dim: int = Config.APPEARANCE_EMBEDDING_DIM,
    ):
        if name not in POLICIES:
            raise ValueError(f"Unknown fusion policy: {name} (known: {', '.join(POLICIES)})")
        if identity_weight < 0 or appearance_weight < 0:
            raise ValueError("Fusion weights must be non-negative")
        total = identity_weight + appearance_weight
        if total <= 0:
            raise ValueError("At least one fusion weight must be positive")

        self.name = name
        self.version = version
        self.identity_weight = identity_weight / total
        self.appearance_weight = appearance_weight / total
        self.identity_dim = identity_dim
        self.appearance_dim = appearance_dim

    @property
    def key(self) -> str:
        return f"{self.name}:{self.version}"

    @property
    def dimension(self) -> int:
        if self.name == "weighted_concat":
            return self.identity_dim + self.appearance_dim
        if self.name == "weighted_sum":
            return max(self.identity_dim, self.appearance_dim)
        return self.identity_dim

    def describe(self) -> Dict:
        return {
            "policy": self.name,
            "version": self.version,
            "key": self.key,
            "identity_weight": self.identity_weight,
            "appearance_weight": self.appearance_weight,
            "dimension": self.dimension,
        }

    def fuse(self, identity: Optional[np.ndarray], appearance: Optional[np.ndarray] = None) -> Optional[np.ndarray]:
        """
        Fuse one face's embeddings.

        Args:
            identity: Unit-length identity embedding, or None
            appearance: Unit-length appearance embedding, or None

        Returns:
            Unit-length fused vector of length ``dimension``, or None when
            there is no identity embedding
        """
        if identity is None:
            return None
        identity = l2_normalize(identity)
        if identity.shape[0] != self.identity_dim:
            raise ValueError(f"Identity embedding has {identity.shape[0]} values, expected {self.identity_dim}")

        if appearance is not None:
            appearance = l2_normalize(appearance)
            if appearance.shape[0] != self.appearance_dim:
                raise ValueError(
                    f"Appearance embedding has {appearance.shape[0]} values, expected {self.appearance_dim}"
                )

        if self.name == "identity_only":
            return identity

        if self.name == "weighted_concat":
            app = appearance if appearance is not None else np.zeros(self.appearance_dim, dtype=np.float32)
            fused = np.concatenate([
                np.sqrt(self.identity_weight) * identity,
                np.sqrt(self.appearance_weight) * app,
            ])
            return l2_normalize(fused)

        # weighted_sum
        dim = self.dimension
        fused = np.zeros(dim, dtype=np.float32)
        fused[: identity.shape[0]] += self.identity_weight * identity
        if appearance is not None:
            fused[: appearance.shape[0]] += self.appearance_weight * appearance
        return l2_normalize(fused)
