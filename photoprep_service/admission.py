"""
Five-slot admission: validation, de-duplication and slot lifecycle.

The controller is the only writer of slot state. Each slot moves through

    empty -> validating -> {valid | error}
    valid -> processing -> {done | error}
    {valid, error, done} -> empty

and the batch scheduler drives the processing half through
`begin_processing` / `complete_processing` / `fail_processing`.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from . import config
from .compression import NormalizationResult
from .errors import (
    DuplicateFile,
    FileTooLarge,
    InvalidTransition,
    PhotoPrepError,
    SlotBusy,
    TooSmall,
    UnsupportedFormat,
)
from .heic_codec import HeicCodec, converted_filename, get_heic_codec
from .preprocessing import (
    SUPPORTED_FORMATS,
    Dimensions,
    ImageBuffer,
    ImageFormat,
    declared_format,
    probe_dimensions,
)

logger = logging.getLogger(__name__)

SLOT_COUNT = 5

DEGRADED_WARNING = (
    "Image could not be compressed below {budget} at minimum quality. "
    "It has been saved at the smallest achievable size."
)


class SlotStatus(str, Enum):
    EMPTY = "empty"
    VALIDATING = "validating"
    VALID = "valid"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


_TRANSITIONS = {
    SlotStatus.EMPTY: {SlotStatus.VALIDATING},
    SlotStatus.VALIDATING: {SlotStatus.VALID, SlotStatus.ERROR},
    SlotStatus.VALID: {SlotStatus.PROCESSING, SlotStatus.EMPTY},
    SlotStatus.PROCESSING: {SlotStatus.DONE, SlotStatus.ERROR},
    SlotStatus.DONE: {SlotStatus.EMPTY},
    SlotStatus.ERROR: {SlotStatus.EMPTY},
}

_IN_FLIGHT = {SlotStatus.VALIDATING, SlotStatus.PROCESSING}


@dataclass(frozen=True)
class SourceDescriptor:
    name: str
    size: int


@dataclass(frozen=True)
class CandidateFile:
    """A file offered for admission, as handed over by a picker or upload."""

    name: str
    data: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def descriptor(self) -> SourceDescriptor:
        return SourceDescriptor(self.name, self.size)

    def to_buffer(self) -> ImageBuffer:
        return ImageBuffer(self.data, declared_format(self.name, self.content_type))


class SourceHandle:
    """Owned reference to an admitted buffer. Released exactly once, then unusable."""

    def __init__(self, buffer: ImageBuffer):
        self._buffer: Optional[ImageBuffer] = buffer

    @property
    def released(self) -> bool:
        return self._buffer is None

    @property
    def buffer(self) -> ImageBuffer:
        if self._buffer is None:
            raise RuntimeError("source buffer has already been released")
        return self._buffer

    def release(self) -> None:
        self._buffer = None


@dataclass
class Slot:
    index: int
    status: SlotStatus = SlotStatus.EMPTY
    source: Optional[SourceHandle] = None
    descriptor: Optional[SourceDescriptor] = None
    dimensions: Optional[Dimensions] = None
    result: Optional[NormalizationResult] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    warning: Optional[str] = None

    @property
    def artifact(self) -> Optional[ImageBuffer]:
        return self.result.artifact if self.result is not None else None

    def release(self) -> None:
        """Drop every buffer this slot owns and return it to ``empty``."""
        if self.source is not None:
            self.source.release()
        self.status = SlotStatus.EMPTY
        self.source = None
        self.descriptor = None
        self.dimensions = None
        self.result = None
        self.error = None
        self.error_kind = None
        self.warning = None


@dataclass(frozen=True)
class BulkAdmission:
    assigned: Tuple[int, ...]
    skipped: int
    message: Optional[str] = None


def _format_megabytes(size: int) -> str:
    return f"{size / config.MIB:.1f}MB"


def _format_limit(size: int) -> str:
    if size % config.MIB == 0:
        return f"{size // config.MIB}MB"
    return _format_megabytes(size)


def artifact_filename(identifier: str, index: int) -> str:
    """Download name for a slot's artifact: 1-based slot number, always ``.jpg``."""
    return f"{identifier}-{index + 1}.jpg"


def skipped_message(skipped: int) -> str:
    noun = "file was" if skipped == 1 else "files were"
    return f"{skipped} {noun} skipped (no empty slots remaining)."


class AdmissionController:
    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        codec: Optional[HeicCodec] = None,
        prober: Callable[[bytes], Dimensions] = probe_dimensions,
    ):
        self.settings = settings or config.get_settings()
        self._codec = codec
        self._prober = prober
        self._slots: List[Slot] = [Slot(index=i) for i in range(SLOT_COUNT)]
        self._batch_running = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def slots(self) -> Tuple[Slot, ...]:
        return tuple(self._slots)

    def slot(self, index: int) -> Slot:
        if not 0 <= index < SLOT_COUNT:
            raise IndexError(f"slot index must be within 0..{SLOT_COUNT - 1}, got {index}")
        return self._slots[index]

    @property
    def empty_slot_count(self) -> int:
        return sum(1 for s in self._slots if s.status is SlotStatus.EMPTY)

    @property
    def all_valid(self) -> bool:
        return all(s.status is SlotStatus.VALID for s in self._slots)

    @property
    def all_done(self) -> bool:
        return all(s.status is SlotStatus.DONE for s in self._slots)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def admit(self, index: int, candidate: CandidateFile) -> Slot:
        """
        Validate ``candidate`` and place it into slot ``index``.

        Whatever the slot held before is released first. Validation failures
        leave the slot in ``error`` with its message; they are not raised.
        """
        slot = self.slot(index)
        self._ensure_idle(slot)
        slot.release()
        self._transition(slot, SlotStatus.VALIDATING)

        try:
            working, dimensions = await self._validate(index, candidate)
        except PhotoPrepError as exc:
            self._fail(slot, str(exc), exc.kind)
            logger.info("Slot %d rejected %r: %s", index, candidate.name, exc.kind)
            return slot
        except Exception:
            self._fail(slot, "This file could not be processed.", "Unexpected")
            logger.exception("Slot %d: unexpected failure while validating %r", index, candidate.name)
            raise

        slot.source = SourceHandle(working)
        slot.descriptor = candidate.descriptor
        slot.dimensions = dimensions
        self._transition(slot, SlotStatus.VALID)
        logger.info(
            "Slot %d accepted %r (%dx%d, %d bytes)",
            index,
            candidate.name,
            dimensions.width,
            dimensions.height,
            working.size_bytes,
        )
        return slot

    async def admit_many(self, candidates: Iterable[CandidateFile]) -> BulkAdmission:
        """Fill empty slots in ascending order, one file at a time; count the excess as skipped."""
        files = list(candidates)
        if not files:
            return BulkAdmission(assigned=(), skipped=0)

        empty = [s.index for s in self._slots if s.status is SlotStatus.EMPTY]
        if not empty:
            return BulkAdmission(
                assigned=(),
                skipped=len(files),
                message="All slots are filled. Remove an image first.",
            )

        to_assign = files[: len(empty)]
        skipped = len(files) - len(to_assign)
        for index, candidate in zip(empty, to_assign):
            await self.admit(index, candidate)

        if skipped:
            logger.info("Bulk admission skipped %d file(s)", skipped)
        return BulkAdmission(
            assigned=tuple(empty[: len(to_assign)]),
            skipped=skipped,
            message=skipped_message(skipped) if skipped else None,
        )

    async def _validate(self, index: int, candidate: CandidateFile) -> Tuple[ImageBuffer, Dimensions]:
        descriptor = candidate.descriptor
        for other in self._slots:
            if other.index != index and other.descriptor == descriptor:
                raise DuplicateFile("This file has already been added.")

        limit = self.settings.max_upload_bytes
        if candidate.size > limit:
            raise FileTooLarge(
                f"File is too large ({_format_megabytes(candidate.size)}). "
                f"Maximum is {_format_limit(limit)}."
            )

        working = candidate.to_buffer()
        if working.format is not None and working.format.is_heic:
            codec = self._codec or get_heic_codec()
            working = await codec.convert(
                working,
                target_format=ImageFormat.JPEG,
                quality=self.settings.heic_conversion_quality,
            )
            logger.info("Slot %d converted %r to %r", index, candidate.name, converted_filename(candidate.name))

        if working.format not in SUPPORTED_FORMATS:
            raise UnsupportedFormat("Only JPG, PNG, WebP, and HEIC files are accepted.")

        dimensions = await asyncio.to_thread(self._prober, working.data)
        if dimensions.long_edge < self.settings.min_long_edge:
            raise TooSmall(
                f"Image is too small ({dimensions.long_edge}px). "
                f"Minimum {self.settings.min_long_edge}px on longest edge."
            )
        return working, dimensions

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def clear(self, index: int) -> Slot:
        slot = self.slot(index)
        self._ensure_idle(slot)
        slot.release()
        logger.info("Slot %d cleared", index)
        return slot

    def reset(self) -> None:
        """Release every slot. Used when the session starts over."""
        for slot in self._slots:
            self._ensure_idle(slot)
        for slot in self._slots:
            slot.release()
        logger.info("Batch reset")

    # ------------------------------------------------------------------
    # Processing half, driven by the batch scheduler
    # ------------------------------------------------------------------

    @property
    def batch_running(self) -> bool:
        return self._batch_running

    @contextmanager
    def batch_run(self) -> Iterator[None]:
        """Hold the batch for a scheduler run; admit/clear/reset raise ``SlotBusy`` meanwhile."""
        if self._batch_running:
            raise SlotBusy("Images are being processed; wait for the batch to finish.")
        self._batch_running = True
        try:
            yield
        finally:
            self._batch_running = False

    def begin_processing(self, index: int) -> ImageBuffer:
        """Move a valid slot to ``processing`` and lend out its source buffer."""
        slot = self.slot(index)
        self._transition(slot, SlotStatus.PROCESSING)
        return slot.source.buffer

    def complete_processing(self, index: int, result: NormalizationResult) -> Slot:
        slot = self.slot(index)
        self._transition(slot, SlotStatus.DONE)
        slot.result = result
        if result.degraded:
            slot.warning = DEGRADED_WARNING.format(budget=_format_limit(self.settings.target_bytes))
            logger.warning("Slot %d: %s", index, slot.warning)
        return slot

    def fail_processing(self, index: int, reason: str, kind: str) -> Slot:
        slot = self.slot(index)
        self._fail(slot, reason, kind)
        return slot

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_idle(self, slot: Slot) -> None:
        if self._batch_running:
            raise SlotBusy("Images are being processed; wait for the batch to finish.")
        if slot.status in _IN_FLIGHT:
            raise SlotBusy(f"Image {slot.index + 1} is busy ({slot.status.value}); wait for it to finish.")

    def _transition(self, slot: Slot, target: SlotStatus) -> None:
        if target not in _TRANSITIONS[slot.status]:
            raise InvalidTransition(
                f"slot {slot.index}: {slot.status.value} -> {target.value} is not allowed"
            )
        slot.status = target

    def _fail(self, slot: Slot, reason: str, kind: str) -> None:
        self._transition(slot, SlotStatus.ERROR)
        if slot.source is not None:
            slot.source.release()
            slot.source = None
        slot.error = reason
        slot.error_kind = kind
