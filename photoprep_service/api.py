"""
FastAPI layer exposing one in-memory submission session.

Endpoints:
 - GET /health
 - GET /slots
 - POST /slots
 - PUT /slots/{index}
 - DELETE /slots/{index}
 - POST /process
 - GET /slots/{index}/artifact
 - POST /reset
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import FastAPI, File, HTTPException, Query, Response, UploadFile
from pydantic import BaseModel

from . import config
from .admission import AdmissionController, CandidateFile, Slot, SlotStatus, artifact_filename
from .batch_worker import BatchScheduler
from .errors import SlotBusy

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

# Already-normalized download identifiers, e.g. "jane-doe".
IDENTIFIER_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


class SlotView(BaseModel):
    index: int
    status: SlotStatus
    filename: Optional[str] = None
    sizeBytes: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    error: Optional[str] = None
    errorKind: Optional[str] = None
    warning: Optional[str] = None
    outputWidth: Optional[int] = None
    outputHeight: Optional[int] = None
    outputBytes: Optional[int] = None
    qualityUsed: Optional[float] = None
    degraded: Optional[bool] = None


class ProgressView(BaseModel):
    running: bool
    current: int
    total: int
    percent: int


class SessionView(BaseModel):
    slots: List[SlotView]
    progress: ProgressView
    allValid: bool
    allDone: bool


class BulkAdmissionResponse(BaseModel):
    assigned: List[int]
    skipped: int
    message: Optional[str] = None
    session: SessionView


class ProcessResponse(BaseModel):
    started: bool
    session: SessionView


def _slot_view(slot: Slot) -> SlotView:
    view = SlotView(
        index=slot.index,
        status=slot.status,
        error=slot.error,
        errorKind=slot.error_kind,
        warning=slot.warning,
    )
    if slot.descriptor is not None:
        view.filename = slot.descriptor.name
        view.sizeBytes = slot.descriptor.size
    if slot.dimensions is not None:
        view.width = slot.dimensions.width
        view.height = slot.dimensions.height
    if slot.result is not None:
        view.outputWidth = slot.result.width
        view.outputHeight = slot.result.height
        view.outputBytes = slot.result.size_bytes
        view.qualityUsed = slot.result.quality_used
        view.degraded = slot.result.degraded
    return view


async def _to_candidate(upload: UploadFile) -> CandidateFile:
    data = await upload.read()
    return CandidateFile(name=upload.filename or "upload", data=data, content_type=upload.content_type)


def create_app(controller: Optional[AdmissionController] = None) -> FastAPI:
    app = FastAPI(title="Photo Submission Prep Service", version="0.1.0")
    controller = controller or AdmissionController(settings=settings)
    scheduler = BatchScheduler(controller)
    # Mutating requests run one at a time so slot transitions never interleave.
    lock = asyncio.Lock()

    app.state.controller = controller
    app.state.scheduler = scheduler

    def session_view() -> SessionView:
        progress = scheduler.progress
        return SessionView(
            slots=[_slot_view(s) for s in controller.slots],
            progress=ProgressView(
                running=progress.running,
                current=progress.current,
                total=progress.total,
                percent=progress.percent,
            ),
            allValid=controller.all_valid,
            allDone=controller.all_done,
        )

    def slot_or_404(index: int) -> Slot:
        try:
            return controller.slot(index)
        except IndexError as exc:
            raise HTTPException(status_code=404, detail="Unknown slot") from exc

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/slots", response_model=SessionView)
    def list_slots():
        return session_view()

    @app.post("/slots", response_model=BulkAdmissionResponse)
    async def admit_files(files: List[UploadFile] = File(...)):
        candidates = [await _to_candidate(f) for f in files]
        async with lock:
            outcome = await controller.admit_many(candidates)
        return BulkAdmissionResponse(
            assigned=list(outcome.assigned),
            skipped=outcome.skipped,
            message=outcome.message,
            session=session_view(),
        )

    @app.put("/slots/{index}", response_model=SlotView)
    async def replace_slot(index: int, file: UploadFile = File(...)):
        slot_or_404(index)
        candidate = await _to_candidate(file)
        async with lock:
            try:
                slot = await controller.admit(index, candidate)
            except SlotBusy as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _slot_view(slot)

    @app.delete("/slots/{index}", response_model=SlotView)
    async def clear_slot(index: int):
        slot_or_404(index)
        async with lock:
            try:
                slot = controller.clear(index)
            except SlotBusy as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _slot_view(slot)

    @app.post("/process", response_model=ProcessResponse)
    async def process_batch():
        if scheduler.is_running:
            return ProcessResponse(started=False, session=session_view())
        async with lock:
            started = await scheduler.run_all()
        return ProcessResponse(started=started, session=session_view())

    @app.get("/slots/{index}/artifact")
    def download_artifact(
        index: int,
        identifier: str = Query(..., min_length=2, pattern=IDENTIFIER_PATTERN),
    ):
        slot = slot_or_404(index)
        if slot.status is not SlotStatus.DONE or slot.artifact is None:
            raise HTTPException(status_code=404, detail="Image has not been processed yet")
        filename = artifact_filename(identifier, index)
        return Response(
            content=slot.artifact.data,
            media_type="image/jpeg",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/reset", response_model=SessionView)
    async def reset_session():
        async with lock:
            try:
                controller.reset()
            except SlotBusy as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
        return session_view()

    return app


app = create_app()
