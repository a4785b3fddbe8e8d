"""
Sequential batch normalization.

Slots are processed one after another so only one decoded image is alive at a
time. The first failure stops the run; slots finished before it keep their
artifacts, slots after it stay `valid`.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Awaitable, Callable, Optional

from . import pipeline
from .admission import AdmissionController, SLOT_COUNT
from .compression import NormalizationResult
from .errors import PhotoPrepError
from .preprocessing import ImageBuffer

logger = logging.getLogger(__name__)

Processor = Callable[[ImageBuffer], Awaitable[NormalizationResult]]
ProgressCallback = Callable[[int, int], None]


@dataclass
class BatchProgress:
    running: bool = False
    current: int = 0  # 1-based slot number being processed
    total: int = SLOT_COUNT
    percent: int = 0


class BatchScheduler:
    def __init__(self, controller: AdmissionController, processor: Optional[Processor] = None):
        self.controller = controller
        self._processor = processor or self._default_processor
        self.progress = BatchProgress()

    async def _default_processor(self, source: ImageBuffer) -> NormalizationResult:
        return await pipeline.process(source, settings=self.controller.settings)

    @property
    def is_running(self) -> bool:
        return self.progress.running

    async def run_all(self, on_progress: Optional[ProgressCallback] = None) -> bool:
        """
        Normalize every slot in index order.

        Returns False without touching any slot when a run is already in
        progress or when not every slot is `valid`; True once a run has
        happened, whether it completed or stopped on a failure.
        """
        if self.progress.running or self.controller.batch_running:
            logger.debug("Batch run already in progress; ignoring request")
            return False
        if not self.controller.all_valid:
            logger.debug("Batch run requested before all slots are valid; ignoring request")
            return False

        slots = self.controller.slots
        total = len(slots)
        self.progress = BatchProgress(running=True, current=0, total=total, percent=0)
        logger.info("Starting batch of %d image(s)", total)
        try:
            with self.controller.batch_run():
                for slot in slots:
                    index = slot.index
                    source = self.controller.begin_processing(index)
                    self.progress.current = index + 1
                    self.progress.percent = round(index / total * 100)
                    if on_progress is not None:
                        on_progress(index, total)

                    try:
                        result = await self._processor(source)
                    except PhotoPrepError as exc:
                        self.controller.fail_processing(index, str(exc), exc.kind)
                        logger.warning("Batch stopped at slot %d: %s", index, exc)
                        return True
                    except Exception as exc:  # noqa: BLE001
                        logger.exception("Batch stopped at slot %d: %s", index, exc)
                        self.controller.fail_processing(index, "Processing failed.", "Unexpected")
                        return True

                    self.controller.complete_processing(index, result)

            self.progress.percent = 100
            logger.info("Batch finished")
            return True
        finally:
            self.progress.running = False
