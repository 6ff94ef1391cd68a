"""Authenticated conversion API."""

import base64
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from nl2kindle.api.deps import Services, get_current_user_id, get_services
from nl2kindle.errors import GoneError, NotFoundError, ValidationError
from nl2kindle.file_operations import is_download_expired
from nl2kindle.logger import get_logger
from nl2kindle.models import CONVERSION_STATUSES, STATUS_COMPLETED, Conversion

router = APIRouter()
logger = get_logger("api.conversions")


class ConversionRequest(BaseModel):
    url: Optional[str] = None
    html_content: Optional[str] = Field(None, alias="htmlContent")
    source_url: Optional[str] = Field(None, alias="sourceUrl")
    custom_metadata: Optional[Dict[str, Any]] = Field(None, alias="customMetadata")
    send_to_kindle: bool = Field(False, alias="sendToKindle")


class UrlRequest(BaseModel):
    url: str


def _serialize(conversion: Conversion) -> Dict[str, Any]:
    return {
        "id": conversion.id,
        "title": conversion.title,
        "author": conversion.author,
        "source": conversion.source,
        "sourceUrl": conversion.source_url,
        "wordCount": conversion.word_count,
        "readingTime": conversion.reading_time,
        "status": conversion.status,
        "fileSize": conversion.file_size,
        "error": conversion.error,
        "deliveryError": conversion.delivery_error,
        "createdAt": conversion.created_at.isoformat() if conversion.created_at else None,
        "completedAt": conversion.completed_at.isoformat() if conversion.completed_at else None,
        "deliveredAt": conversion.delivered_at.isoformat() if conversion.delivered_at else None,
    }


def _media_type(filename: str) -> str:
    return "application/epub+zip" if filename.endswith(".epub") else "text/html"


@router.post("/conversion")
def create_conversion(
    payload: ConversionRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    result = services.pipeline.convert_direct(
        user_id,
        html=payload.html_content,
        url=payload.url,
        source_url=payload.source_url,
        custom_metadata=payload.custom_metadata,
        send_to_kindle=payload.send_to_kindle,
    )
    body: Dict[str, Any] = {
        "success": True,
        "conversionId": result.conversion_id,
        "metadata": result.metadata.to_dict(),
        "fileUrl": f"/api/conversions/{result.conversion_id}/download",
        "fileSize": result.file_size,
        "filename": result.filename,
    }
    if result.delivery is not None:
        body["delivered"] = result.delivery.success
    if result.warning:
        body["warning"] = result.warning
    return body


@router.get("/conversion")
def list_conversions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    search: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    if status and status not in CONVERSION_STATUSES:
        raise ValidationError(f"Unknown status: {status}")
    result = services.store.list_for_user(user_id, page=page, limit=limit, status=status, search=search)
    return {
        "conversions": [_serialize(c) for c in result.items],
        "pagination": {
            "page": result.page,
            "limit": result.limit,
            "total": result.total,
            "totalPages": result.total_pages,
        },
    }


@router.get("/conversion/stats")
def conversion_stats(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return services.store.stats_for_user(user_id).to_dict()


@router.post("/conversion/url")
def convert_url(
    payload: UrlRequest,
    services: Services = Depends(get_services),
):
    """Convert a supported article URL and return the book inline."""
    generated, metadata = services.pipeline.convert_url_inline(payload.url)
    return {
        "success": True,
        "metadata": metadata.to_dict(),
        "filename": generated.filename,
        "fileSize": generated.size,
        "mediaType": generated.media_type,
        "fileData": base64.b64encode(generated.content).decode("ascii"),
    }


@router.get("/conversions/{conversion_id}")
def get_conversion(
    conversion_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return _serialize(services.store.get(conversion_id, user_id=user_id))


@router.post("/conversions/{conversion_id}/retry")
def retry_conversion(
    conversion_id: str,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    intake = services.pipeline.retry_conversion(user_id, conversion_id)
    background_tasks.add_task(services.pipeline.process_intake, intake)
    return {"success": True, "message": "Retry initiated", "conversionId": conversion_id}


@router.get("/conversions/{conversion_id}/download")
def download_conversion(
    conversion_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    conversion = services.store.get(conversion_id, user_id=user_id)
    if conversion.status != STATUS_COMPLETED or not conversion.file_url:
        raise ValidationError("Conversion not completed")
    if is_download_expired(conversion.completed_at, services.settings.download_retention_days):
        raise GoneError("Download link has expired")

    try:
        content = services.artifacts.read(conversion.file_url)
    except (OSError, ValueError) as e:
        logger.error(f"Artifact for {conversion_id} unavailable: {e}")
        raise NotFoundError("File not found") from e

    filename = conversion.file_url.replace("\\", "/").rsplit("/", 1)[-1]
    return Response(
        content=content,
        media_type=_media_type(filename),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
