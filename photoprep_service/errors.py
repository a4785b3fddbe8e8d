"""
Failure taxonomy shared by admission, normalization and the HTTP layer.

Every user-facing failure is a ``PhotoPrepError``; its ``kind`` is what gets
recorded on a slot next to the message.
"""

from __future__ import annotations


class PhotoPrepError(ValueError):
    kind = "PhotoPrepError"

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls.kind = cls.__name__


class DuplicateFile(PhotoPrepError):
    pass


class FileTooLarge(PhotoPrepError):
    pass


class ConversionFailed(PhotoPrepError):
    pass


class UnsupportedFormat(PhotoPrepError):
    pass


class ImageUnreadable(PhotoPrepError):
    pass


class TooSmall(PhotoPrepError):
    pass


class EncodingFailed(PhotoPrepError):
    pass


class InvalidDimensions(PhotoPrepError):
    pass


class SlotBusy(PhotoPrepError):
    """Raised when a slot is cleared or re-admitted while its work is in flight."""


class InvalidTransition(RuntimeError):
    """A slot was asked to move along an edge the state machine does not have."""
