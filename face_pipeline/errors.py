"""Exceptions raised by the face pipeline.

Only ``ModelUnavailable`` and its subclasses are meant to escape the
pipeline. The rest are raised and absorbed inside the stage that owns
them.
"""


class FacePipelineError(Exception):
    """Base class for face pipeline errors."""


class ModelUnavailable(FacePipelineError):
    """A model file is missing or its inference session failed to load."""


class DetectorUnavailable(ModelUnavailable):
    """The face detector cannot be used; detection capability is down."""


class EmbedderUnavailable(ModelUnavailable):
    """The identity embedding network cannot be used."""


class DecodeShapeMismatch(FacePipelineError):
    """A detector head tensor does not have the shape its variant declares."""


class DetectionTimeout(FacePipelineError):
    """Detection for a photo did not finish within the caller's budget."""


class EmbeddingExtractionFailed(FacePipelineError):
    """One embedding for one face could not be computed (e.g. degenerate crop)."""


class InvalidStateTransition(FacePipelineError, ValueError):
    """A Face record was moved to a state its current state does not allow."""
