from __future__ import annotations


class PoseDetectionError(Exception):
    """Base class for every error raised by the pose pipeline."""


class InvalidStateError(PoseDetectionError, RuntimeError):
    """Pipeline used before initialize() or after dispose()."""


class MalformedModelOutputError(PoseDetectionError, ValueError):
    """Model produced a tensor the decoders cannot interpret.

    Distinct from a valid output that simply contains zero detections.
    """


class InferenceError(PoseDetectionError, RuntimeError):
    """The inference engine raised while running a model."""


class ImageDecodeError(PoseDetectionError, ValueError):
    """Input bytes could not be decoded into an image."""
