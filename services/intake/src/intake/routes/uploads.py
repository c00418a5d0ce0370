"""REST API for photo extraction, upload sessions and the pending upload queue."""

from __future__ import annotations

from typing import List, Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    HTTPException,
    Request,
    Response,
    UploadFile,
)

from common.db.models import VISIBLE_UPLOAD_STATUSES
from common.logging import get_logger

from ..errors import BatchSetupError, IntakeError, RecordNotFound
from ..schemas import (
    BulkExtractResponse,
    CancelSessionResponse,
    ExtractResponse,
    MarkImportedRequest,
    MarkImportedResponse,
    MobileUploadResponse,
    PendingUploadsResponse,
    PendingUploadView,
    ProcessSessionRequest,
    ProcessSessionResponse,
    SessionCreatedResponse,
    SessionStatusResponse,
    SuccessResponse,
    UpdatePendingUploadRequest,
    VisionModel,
)
from ..service import IncomingImage, IntakeServices, to_view

logger = get_logger(__name__)
router = APIRouter(prefix="/api/intake", tags=["intake"])

NO_STORE = "no-store, no-cache, must-revalidate"


async def get_services(request: Request) -> IntakeServices:
    """Get the intake services container from app state."""
    services = getattr(request.app.state, "intake", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Intake service not initialised")
    return services


async def get_owner(x_owner_id: Optional[str] = Header(None)) -> str:
    return (x_owner_id or "").strip() or "local"


async def _read_images(files: List[UploadFile], limit: int) -> List[IncomingImage]:
    if len(files) > limit:
        raise BatchSetupError(f"Too many files; the limit is {limit}")
    return [
        IncomingImage(data=await file.read(), filename=file.filename, content_type=file.content_type)
        for file in files
    ]


@router.get("/models", response_model=List[VisionModel])
async def list_models(services: IntakeServices = Depends(get_services)) -> List[VisionModel]:
    return list(services.extractor.models)


@router.post("/extract", response_model=ExtractResponse)
async def extract_image(
    image: UploadFile = File(..., description="Spool photo (JPEG, PNG, WebP or HEIC)"),
    model: Optional[str] = Form(None),
    services: IntakeServices = Depends(get_services),
) -> ExtractResponse:
    """Extract one photo directly; nothing is queued."""
    (incoming,) = await _read_images([image], 1)
    image_ref, result = await services.extract_single(incoming, model)
    return ExtractResponse(image_ref=image_ref, extracted_data=result)


@router.post("/extract-bulk", response_model=BulkExtractResponse)
async def extract_bulk(
    images: List[UploadFile] = File(...),
    model: Optional[str] = Form(None),
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> BulkExtractResponse:
    """Extract several photos as one batch; each becomes a pending upload record."""
    incoming = await _read_images(images, services.settings.max_upload_files)
    logger.info("Bulk extraction requested", owner_id=owner_id, count=len(incoming))
    return await services.extract_bulk(incoming, owner_id, model)


@router.post("/sessions", response_model=SessionCreatedResponse, status_code=201)
async def create_session(
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> SessionCreatedResponse:
    upload_session = services.manager.create_session(owner_id)
    return SessionCreatedResponse(
        session_token=upload_session.token,
        upload_url=services.manager.upload_url(upload_session.token),
        expires_at=upload_session.expires_at,
    )


@router.get("/sessions/{token}", response_model=SessionStatusResponse)
async def get_session_status(
    token: str,
    response: Response,
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> SessionStatusResponse:
    response.headers["Cache-Control"] = NO_STORE
    return services.session_status(token, owner_id)


@router.post("/mobile-upload/{token}", response_model=MobileUploadResponse)
async def mobile_upload(
    token: str,
    images: List[UploadFile] = File(...),
    services: IntakeServices = Depends(get_services),
) -> MobileUploadResponse:
    """Producer-side upload; the token is the only credential."""
    incoming = await _read_images(images, services.settings.max_upload_files)
    for image in incoming:
        services.store.validate(image.data, image.content_type)

    for image in incoming:
        image_ref = services.store.save(image.data, image.filename, image.content_type)
        try:
            services.manager.add_image(token, image_ref, image.filename)
        except IntakeError:
            services.store.delete(image_ref)
            raise

    total = len(services.queue.list_by_session(token, VISIBLE_UPLOAD_STATUSES))
    logger.info("Mobile upload stored images", uploaded=len(incoming), total=total)
    return MobileUploadResponse(uploaded=len(incoming), total=total)


@router.post("/sessions/{token}/process", response_model=ProcessSessionResponse)
async def process_session(
    token: str,
    payload: Optional[ProcessSessionRequest] = None,
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> ProcessSessionResponse:
    """Start background processing of pending images and report current state."""
    payload = payload or ProcessSessionRequest()
    services.manager.require_owner(services.manager.get_session(token), owner_id)
    await services.processor.trigger(token, ids=payload.ids, model=payload.model)
    status = services.session_status(token, owner_id)
    return ProcessSessionResponse(
        results=status.images,
        processing=status.processing or status.pending_count > 0,
        processed_count=status.processed_count,
        total_count=status.image_count,
    )


@router.post("/sessions/{token}/cancel", response_model=CancelSessionResponse)
async def cancel_session(
    token: str,
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> CancelSessionResponse:
    services.manager.require_owner(services.manager.get_session(token), owner_id)
    removed = services.manager.cancel_session(token)
    return CancelSessionResponse(cancelled_count=removed, status="cancelled")


@router.delete("/sessions/{token}", response_model=SuccessResponse)
async def delete_session(
    token: str,
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> SuccessResponse:
    services.manager.require_owner(services.manager.get_session(token), owner_id)
    services.manager.delete_session(token)
    return SuccessResponse()


@router.get("/pending-uploads", response_model=PendingUploadsResponse)
async def list_pending_uploads(
    response: Response,
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> PendingUploadsResponse:
    response.headers["Cache-Control"] = NO_STORE
    return services.pending_uploads(owner_id)


@router.post("/pending-uploads/mark-imported", response_model=MarkImportedResponse)
async def mark_imported(
    payload: MarkImportedRequest,
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> MarkImportedResponse:
    imported = services.queue.mark_imported(payload.ids, owner_id=owner_id)
    return MarkImportedResponse(imported=imported)


@router.patch("/pending-uploads/{record_id}", response_model=PendingUploadView)
async def update_pending_upload(
    record_id: int,
    payload: UpdatePendingUploadRequest,
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> PendingUploadView:
    if services.queue.get(record_id).owner_id != owner_id:
        raise RecordNotFound(record_id)
    return to_view(services.queue.update_extracted(record_id, payload.extracted_data))


@router.delete("/pending-uploads/{record_id}", response_model=SuccessResponse)
async def delete_pending_upload(
    record_id: int,
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> SuccessResponse:
    removed = services.queue.delete(record_id, owner_id=owner_id)
    services.remove_images([removed])
    return SuccessResponse()


@router.delete("/pending-uploads", response_model=SuccessResponse)
async def clear_pending_uploads(
    owner_id: str = Depends(get_owner),
    services: IntakeServices = Depends(get_services),
) -> SuccessResponse:
    services.remove_images(services.queue.clear_owner(owner_id))
    return SuccessResponse()


__all__ = ["get_owner", "get_services", "router"]
