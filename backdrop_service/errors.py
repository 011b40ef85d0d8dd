"""
Failure taxonomy for the backdrop pipeline.

Every stage raises a subclass of `BackdropError`. Each carries the HTTP status
and the message that is safe to show the caller; diagnostics stay in the log.
"""

from __future__ import annotations


class BackdropError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(BackdropError):
    status_code = 400
    default_message = "Invalid request"


class NoImageProvided(ValidationError):
    default_message = "No image provided"


class InvalidMediaType(ValidationError):
    default_message = "Uploaded file is not an image"


class PayloadTooLarge(ValidationError):
    default_message = "Image exceeds the maximum allowed size"


class InvalidUrl(ValidationError):
    default_message = "Invalid image URL"


class RemoteNotAnImage(ValidationError):
    default_message = "URL does not point to an image"


class RemoteFetchTimeout(ValidationError):
    default_message = "Timed out fetching image URL"


class RemoteFetchFailed(ValidationError):
    default_message = "Could not download image"


class InvalidColor(ValidationError):
    default_message = "Invalid background color"


class UpstreamToolError(BackdropError):
    default_message = "Background removal failed"


class BackgroundRemovalFailed(UpstreamToolError):
    pass


class BackgroundRemovalTimeout(UpstreamToolError):
    default_message = "Background removal timed out"


class ImageCodecError(BackdropError):
    default_message = "Image composition failed"


class ImageDecodeError(ImageCodecError):
    pass


class ImageEncodeError(ImageCodecError):
    pass
