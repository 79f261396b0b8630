# studio_ingest/api/routes/ingest.py
# Ingest routes. Keep routes thin: validation and state live in IngestService.

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse

from studio_ingest.api.deps import current_user, get_service
from studio_ingest.core.errors import StorageError
from studio_ingest.repositories.models import StagedImage, Tag
from studio_ingest.schemas.ingest import (
    BatchEdit,
    EnhanceOut,
    IdsIn,
    ImageEdit,
    PreviewStatusOut,
    PromoteIn,
    PromoteOut,
    PromotionOutcomeOut,
    StagedImageOut,
    TagIn,
    TagOut,
    TagsIn,
)
from studio_ingest.services.doctor import diagnose
from studio_ingest.services.pipeline import IngestService
from studio_ingest.services.storage import LocalStorage
from studio_ingest.utils.http import abs_url

# Router mounted under /api in main.py (→ /api/ingest/...)
api_router = APIRouter(prefix="/ingest", tags=["ingest"])
# Public router mounted without prefix (→ /ingest-files/*)
public_router = APIRouter(tags=["ingest-public"])


# ---- serialization helpers ----

def _tag_out(t: Tag) -> TagOut:
    return TagOut(id=t.id, name=t.name, slug=t.slug, tag_type=t.tag_type, color=t.color)


def _image_out(request: Request, temp: LocalStorage, img: StagedImage) -> StagedImageOut:
    return StagedImageOut(
        id=img.id,
        original_filename=img.original_filename,
        file_size=img.file_size,
        thumbnail_url=abs_url(request, temp.url(img.thumbnail_path)),
        preview_url=abs_url(request, temp.url(img.preview_path)),
        preview_width=img.preview_width,
        preview_status=img.preview_status,
        preview_error=img.preview_error,
        enhancement_status=img.enhancement_status,
        culled=img.culled,
        starred=img.starred,
        rating=img.rating,
        rotation=img.rotation,
        order_index=img.order_index,
        metadata=img.metadata,
        extraction_method=img.extraction_method,
        metadata_error=img.metadata_error,
        created_at=img.created_at,
        tags=[_tag_out(t) for t in img.tags],
    )


def _images_out(request: Request, svc: IngestService, images: list[StagedImage]) -> list[StagedImageOut]:
    temp = svc.temp_storage()
    return [_image_out(request, temp, img) for img in images]


# ===========================
# ========== API ============
# ===========================

@api_router.get("/images", response_model=list[StagedImageOut])
def api_list_images(request: Request, user_id: int = Depends(current_user),
                    svc: IngestService = Depends(get_service)):
    """All staged images of the caller, in display order."""
    return _images_out(request, svc, svc.list_images(user_id))


@api_router.post("/images", response_model=StagedImageOut, status_code=201)
def api_upload(request: Request, file: UploadFile = File(...), user_id: int = Depends(current_user),
               svc: IngestService = Depends(get_service)):
    """
    Multipart upload. Metadata + thumbnail are done when this returns;
    the preview is queued (poll /preview-status).
    """
    img = svc.upload(user_id, file.filename or "", file.file)
    return _image_out(request, svc.temp_storage(), img)


@api_router.patch("/images/{image_id}", response_model=StagedImageOut)
def api_update_image(request: Request, image_id: str, edit: ImageEdit,
                     user_id: int = Depends(current_user), svc: IngestService = Depends(get_service)):
    img = svc.update(image_id, user_id, edit.model_dump(exclude_unset=True))
    return _image_out(request, svc.temp_storage(), img)


@api_router.post("/images/batch", response_model=list[StagedImageOut])
def api_batch_update(request: Request, body: BatchEdit, user_id: int = Depends(current_user),
                     svc: IngestService = Depends(get_service)):
    tags = [t.model_dump() for t in body.tags] if body.tags else None
    images = svc.batch_update(body.ids, user_id, body.changes.model_dump(exclude_unset=True), tags)
    return _images_out(request, svc, images)


@api_router.post("/images/reorder", response_model=list[StagedImageOut])
def api_reorder(request: Request, body: IdsIn, user_id: int = Depends(current_user),
                svc: IngestService = Depends(get_service)):
    return _images_out(request, svc, svc.reorder(user_id, body.ids))


@api_router.delete("/images/{image_id}")
def api_delete_image(image_id: str, user_id: int = Depends(current_user),
                     svc: IngestService = Depends(get_service)):
    svc.delete(image_id, user_id)
    return {"deleted": image_id}


# ---- previews ----

@api_router.post("/preview-status", response_model=list[PreviewStatusOut])
def api_preview_status(request: Request, body: IdsIn, user_id: int = Depends(current_user),
                       svc: IngestService = Depends(get_service)):
    """Polling endpoint. Reads rows only; never triggers work."""
    temp = svc.temp_storage()
    return [
        PreviewStatusOut(
            id=row["id"],
            preview_status=row["preview_status"],
            preview_url=abs_url(request, temp.url(row["preview_path"])),
            preview_width=row["preview_width"],
            preview_error=row["preview_error"],
            thumbnail_url=abs_url(request, temp.url(row["thumbnail_path"])),
            enhancement_status=row["enhancement_status"],
        )
        for row in svc.preview_status(body.ids, user_id)
    ]


@api_router.post("/images/{image_id}/preview/retry", response_model=StagedImageOut)
def api_retry_preview(request: Request, image_id: str, user_id: int = Depends(current_user),
                      svc: IngestService = Depends(get_service)):
    img = svc.retry_preview(image_id, user_id)
    return _image_out(request, svc.temp_storage(), img)


@api_router.post("/enhance", response_model=list[EnhanceOut])
def api_enhance(body: IdsIn, user_id: int = Depends(current_user),
                svc: IngestService = Depends(get_service)):
    return svc.request_enhancement(body.ids, user_id)


# ---- tags ----

@api_router.get("/tags", response_model=list[TagOut])
def api_search_tags(q: str = "", tag_type: Optional[str] = None, limit: int = 20,
                    svc: IngestService = Depends(get_service)):
    return [_tag_out(t) for t in svc.search_tags(q, tag_type, min(max(limit, 1), 100))]


@api_router.post("/tags", response_model=TagOut, status_code=201)
def api_create_tag(body: TagIn, svc: IngestService = Depends(get_service)):
    return _tag_out(svc.create_tag(body.name, body.tag_type, body.color))


@api_router.put("/images/{image_id}/tags", response_model=list[TagOut])
def api_assign_tags(image_id: str, body: TagsIn, user_id: int = Depends(current_user),
                    svc: IngestService = Depends(get_service)):
    """Replace the image's tags with exactly this set."""
    return [_tag_out(t) for t in svc.assign_tags(image_id, user_id, [t.model_dump() for t in body.tags])]


@api_router.post("/images/{image_id}/tags", response_model=list[TagOut])
def api_add_tags(image_id: str, body: TagsIn, user_id: int = Depends(current_user),
                 svc: IngestService = Depends(get_service)):
    return [_tag_out(t) for t in svc.add_tags(image_id, user_id, [t.model_dump() for t in body.tags])]


@api_router.delete("/images/{image_id}/tags/{tag_id}")
def api_remove_tag(image_id: str, tag_id: int, user_id: int = Depends(current_user),
                   svc: IngestService = Depends(get_service)):
    if not svc.remove_tag(image_id, user_id, tag_id):
        raise HTTPException(status_code=404, detail="tag not attached to image")
    return {"removed": tag_id}


# ---- promotion ----

@api_router.post("/promote", response_model=PromoteOut)
def api_promote(body: PromoteIn, user_id: int = Depends(current_user),
                svc: IngestService = Depends(get_service)):
    """Promote the listed non-culled images, in display order, as one batch."""
    association = body.association.model_dump() if body.association else None
    report = svc.promote(body.ids, user_id, association)
    return PromoteOut(
        batch_id=report.batch_id,
        promoted=[PromotionOutcomeOut(**vars(o)) for o in report.promoted],
        failed=[PromotionOutcomeOut(**vars(o)) for o in report.failed],
        skipped=report.skipped,
    )


# ---- diagnostics ----

@api_router.get("/doctor")
def api_doctor(svc: IngestService = Depends(get_service)):
    """ExifTool availability report (same data as scripts/ingest_doctor.py)."""
    return diagnose(svc.exiftool_factory(svc.resolve()))


# ==============================
# ======== PUBLIC FILES ========
# ==============================

@public_router.get("/ingest-files/{path:path}")
def get_ingest_file(path: str, svc: IngestService = Depends(get_service)):
    """Serve a thumbnail/preview/original from the temp storage area."""
    temp = svc.temp_storage()
    try:
        abs_path = temp.path(path)
    except StorageError:
        raise HTTPException(status_code=403, detail="forbidden path")
    if not abs_path.is_file():
        raise HTTPException(status_code=404, detail="file not found")
    return FileResponse(abs_path)
