# services/exceptions.py
"""
Error taxonomy for the enhancement core.

InvalidInputError and DependencyFailureError are deliberately separate
branches so callers can tell "reject permanently" from "retry later".
Watermark failures never raise (see services.watermark) and an unknown
preset is signalled with None, not an exception.
"""


class ImageProcessingError(Exception):
    """Raised when a pipeline stage fails on otherwise valid input."""
    error_type = "processing_error"


class InvalidInputError(ImageProcessingError):
    """Malformed source image, unsupported output format or bad crop rectangle."""
    error_type = "invalid_input"


class UnsupportedImageError(InvalidInputError):
    """The byte stream failed metadata probing (corrupted or not an allowed format)."""
    error_type = "unsupported_image"


class UnsupportedFormatError(InvalidInputError):
    """Requested output format or quality is not supported by the encoder."""


class InvalidCropError(InvalidInputError):
    """Crop rectangle does not fit inside the image."""


class DependencyFailureError(ImageProcessingError):
    """A blob store or preset store call failed."""
    error_type = "dependency_failure"


class BlobNotFoundError(DependencyFailureError):
    """The requested key does not exist in the blob store."""
    error_type = "not_found"


class StorageUnavailableError(DependencyFailureError):
    """The blob store could not be reached or rejected the request."""
