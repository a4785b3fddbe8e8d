from __future__ import annotations

import asyncio
from io import BytesIO

import pytest
from PIL import Image

from photoprep_service.admission import AdmissionController, CandidateFile, SlotStatus
from photoprep_service.batch_worker import BatchScheduler
from photoprep_service.compression import NormalizationResult
from photoprep_service.errors import EncodingFailed, SlotBusy
from photoprep_service.preprocessing import Dimensions, ImageBuffer, ImageFormat


class FakeProcessor:
    def __init__(self, fail_at=None, crash_at=None, degraded_at=None):
        self.fail_at = fail_at
        self.crash_at = crash_at
        self.degraded_at = degraded_at
        self.seen = []

    async def __call__(self, source: ImageBuffer) -> NormalizationResult:
        index = len(self.seen)
        self.seen.append(source.data)
        if index == self.fail_at:
            raise EncodingFailed("Image compression failed. Try closing other programs to free memory.")
        if index == self.crash_at:
            raise RuntimeError("segfault in encoder")
        return NormalizationResult(
            artifact=ImageBuffer(b"jpeg-%d" % index, ImageFormat.JPEG),
            width=2000,
            height=1333,
            quality_used=0.92,
            degraded=index == self.degraded_at,
        )


@pytest.fixture
def controller(settings):
    controller = AdmissionController(settings=settings, prober=lambda data: Dimensions(3000, 2000))
    files = [CandidateFile(f"{i}.jpg", b"img-%d" % i, "image/jpeg") for i in range(5)]
    asyncio.run(controller.admit_many(files))
    assert controller.all_valid
    return controller


def test_slots_are_processed_in_order(controller):
    processor = FakeProcessor()
    scheduler = BatchScheduler(controller, processor=processor)

    assert asyncio.run(scheduler.run_all()) is True

    assert processor.seen == [b"img-%d" % i for i in range(5)]
    assert controller.all_done
    assert [s.artifact.data for s in controller.slots] == [b"jpeg-%d" % i for i in range(5)]
    assert scheduler.progress.percent == 100
    assert scheduler.progress.running is False


def test_first_failure_aborts_and_keeps_completed_slots(controller):
    processor = FakeProcessor(fail_at=2)
    scheduler = BatchScheduler(controller, processor=processor)

    asyncio.run(scheduler.run_all())

    statuses = [s.status for s in controller.slots]
    assert statuses == [
        SlotStatus.DONE,
        SlotStatus.DONE,
        SlotStatus.ERROR,
        SlotStatus.VALID,
        SlotStatus.VALID,
    ]
    assert controller.slot(0).artifact.data == b"jpeg-0"
    assert controller.slot(1).artifact.data == b"jpeg-1"
    assert controller.slot(2).error_kind == "EncodingFailed"
    assert controller.slot(2).artifact is None
    assert len(processor.seen) == 3
    assert scheduler.is_running is False


def test_unexpected_failure_is_recorded_generically(controller):
    scheduler = BatchScheduler(controller, processor=FakeProcessor(crash_at=0))

    asyncio.run(scheduler.run_all())

    slot = controller.slot(0)
    assert slot.status is SlotStatus.ERROR
    assert slot.error == "Processing failed."
    assert all(s.status is SlotStatus.VALID for s in controller.slots[1:])


def test_progress_is_reported_per_slot(controller):
    reports = []
    snapshots = []
    scheduler = BatchScheduler(controller, processor=FakeProcessor())

    def on_progress(index, total):
        reports.append((index, total))
        snapshots.append((scheduler.progress.current, scheduler.progress.percent))

    asyncio.run(scheduler.run_all(on_progress=on_progress))

    assert reports == [(i, 5) for i in range(5)]
    assert snapshots == [(1, 0), (2, 20), (3, 40), (4, 60), (5, 80)]


def test_run_requires_every_slot_valid(settings):
    controller = AdmissionController(settings=settings, prober=lambda data: Dimensions(3000, 2000))
    asyncio.run(controller.admit(0, CandidateFile("only.jpg", b"x", "image/jpeg")))
    processor = FakeProcessor()

    assert asyncio.run(BatchScheduler(controller, processor=processor).run_all()) is False
    assert processor.seen == []
    assert controller.slot(0).status is SlotStatus.VALID


def test_reentrant_run_is_a_silent_noop(controller):
    nested = []

    class ReentrantProcessor(FakeProcessor):
        async def __call__(self, source):
            if not nested:
                nested.append(await scheduler.run_all())
            return await super().__call__(source)

    processor = ReentrantProcessor()
    scheduler = BatchScheduler(controller, processor=processor)

    asyncio.run(scheduler.run_all())

    assert nested == [False]
    assert len(processor.seen) == 5
    assert controller.all_done


def test_controller_refuses_changes_while_batch_runs(controller):
    refusals = []

    class InterferingProcessor(FakeProcessor):
        async def __call__(self, source):
            if not refusals:
                for attempt in (lambda: controller.clear(3), controller.reset):
                    try:
                        attempt()
                    except SlotBusy as exc:
                        refusals.append(exc)
                try:
                    await controller.admit(4, CandidateFile("late.jpg", b"late", "image/jpeg"))
                except SlotBusy as exc:
                    refusals.append(exc)
            return await super().__call__(source)

    scheduler = BatchScheduler(controller, processor=InterferingProcessor())

    assert asyncio.run(scheduler.run_all()) is True

    assert len(refusals) == 3
    assert controller.all_done
    assert controller.batch_running is False
    # the hold is released once the run ends
    assert controller.clear(3).status is SlotStatus.EMPTY


def test_degraded_result_completes_with_warning(controller):
    scheduler = BatchScheduler(controller, processor=FakeProcessor(degraded_at=1))

    asyncio.run(scheduler.run_all())

    slot = controller.slot(1)
    assert slot.status is SlotStatus.DONE
    assert slot.warning is not None
    assert controller.slot(0).warning is None


def test_default_processor_runs_the_real_pipeline(settings, make_image):
    controller = AdmissionController(settings=settings)
    colors = [(200, 30, 30), (30, 200, 30), (30, 30, 200), (200, 200, 30), (30, 200, 200)]
    files = [
        CandidateFile(f"photo-{i}.png", make_image(2400, 1600, color=color), "image/png")
        for i, color in enumerate(colors)
    ]
    asyncio.run(controller.admit_many(files))

    assert asyncio.run(BatchScheduler(controller).run_all()) is True

    for slot in controller.slots:
        assert slot.status is SlotStatus.DONE
        with Image.open(BytesIO(slot.artifact.data)) as image:
            assert image.format == "JPEG"
            assert image.size == (2000, 1333)
