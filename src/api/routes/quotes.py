"""Quote image API endpoints."""

import asyncio
import base64
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.api.config import REQUEST_TIMEOUT_SECONDS, settings
from src.api.models import (
    BatchImageRequest,
    BatchImageResponse,
    BatchItemResponse,
    QuoteImageRequest,
    QuoteImageResponse,
    TaskStatusResponse,
)
from src.core.cache import ImageCache
from src.core.processor import ImageProcessingError, ImageProcessor, ProcessedImage
from src.core.scaler import UnsupportedFormatError
from src.utils.device import DeviceDetector
from src.utils.metrics import memory_usage

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/api/v1")

GENERIC_FAILURE = "Image generation failed, please retry"


def get_image_processor(request: Request) -> ImageProcessor:
    """Get the application's image processor."""
    processor: ImageProcessor = request.app.state.processor
    return processor


def get_image_cache(request: Request) -> ImageCache:
    """Get the application's image cache."""
    cache: ImageCache = request.app.state.cache
    return cache


def _resolve_dimensions(
    request: Request, body: QuoteImageRequest
) -> tuple[Optional[int], Optional[int]]:
    if body.width and body.height:
        return body.width, body.height
    if body.device and body.device != "none":
        return DeviceDetector.resolve_dimensions(request, body.device)
    return None, None


def _to_response_model(image: ProcessedImage, processing_ms: int) -> QuoteImageResponse:
    return QuoteImageResponse(
        data=base64.b64encode(image.data).decode("utf-8"),
        format=image.format,
        mime_type=image.mime_type,
        width=image.width,
        height=image.height,
        size_bytes=image.size,
        processing_ms=processing_ms,
    )


@router.post("/quotes/image")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
@limiter.limit(f"{settings.rate_limit_per_hour}/hour")
async def create_quote_image(
    request: Request,
    body: QuoteImageRequest,
    processor: ImageProcessor = Depends(get_image_processor),
) -> Response:
    """
    Generate a quote image.

    Returns binary, base64 or JSON output based on the output field.
    """
    start_time = time.time()
    width, height = _resolve_dimensions(request, body)
    options = body.to_processing_options(settings.site_name, width, height)

    try:
        image = await asyncio.wait_for(
            processor.process_image(options), timeout=REQUEST_TIMEOUT_SECONDS
        )

    except asyncio.TimeoutError:
        logger.error(f"Request timeout after {REQUEST_TIMEOUT_SECONDS}s")
        raise HTTPException(
            status_code=504,
            detail=f"Request timeout: processing took longer than {REQUEST_TIMEOUT_SECONDS}s",
        )

    except UnsupportedFormatError as e:
        logger.warning(f"Rejected image format: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    except ImageProcessingError as e:
        logger.error(f"Image processing error [{e.code}]: {e}")
        raise HTTPException(status_code=e.status_code, detail=GENERIC_FAILURE)

    except Exception as e:
        logger.error(f"Unexpected error generating image: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    processing_ms = int((time.time() - start_time) * 1000)
    return _format_response(image, body.output, processing_ms)


@router.post("/quotes/images/batch", response_model=BatchImageResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def create_quote_images(
    request: Request,
    body: BatchImageRequest,
    processor: ImageProcessor = Depends(get_image_processor),
) -> BatchImageResponse:
    """Generate several quote images with bounded concurrency."""
    start_time = time.time()
    batch = []
    for item in body.items:
        width, height = _resolve_dimensions(request, item)
        batch.append(item.to_processing_options(settings.site_name, width, height))

    result = await processor.process_batch(batch)
    processing_ms = int((time.time() - start_time) * 1000)

    return BatchImageResponse(
        successful=[
            BatchItemResponse(
                index=item.index,
                task_id=item.task_id,
                image=_to_response_model(item.image, processing_ms) if item.image else None,
            )
            for item in sorted(result.successful, key=lambda r: r.index)
        ],
        failed=[
            BatchItemResponse(index=item.index, task_id=item.task_id, error=GENERIC_FAILURE)
            for item in sorted(result.failed, key=lambda r: r.index)
        ],
    )


@router.get("/tasks/{task_id}", response_model=TaskStatusResponse)
async def get_task_status(
    task_id: str,
    processor: ImageProcessor = Depends(get_image_processor),
) -> TaskStatusResponse:
    """Get the status of a tracked processing task."""
    task = processor.get_task_status(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")

    return TaskStatusResponse(
        id=task.id,
        status=task.status.value,
        progress=task.progress,
        retries=task.retries,
        error=task.error,
        start_time=task.start_time,
        end_time=task.end_time,
        priority=task.priority,
    )


def _format_response(image: ProcessedImage, output: str, processing_ms: int) -> Response:
    """
    Format response based on output type.

    Args:
        image: Generated image
        output: Output format ('base64', 'json', 'binary')
        processing_ms: Processing time in milliseconds

    Returns:
        Formatted response
    """
    if output == "json":
        return JSONResponse(content=_to_response_model(image, processing_ms).model_dump())

    elif output == "base64":
        base64_data = base64.b64encode(image.data).decode("utf-8")
        return PlainTextResponse(content=f"data:{image.mime_type};base64,{base64_data}")

    elif output == "binary":
        return Response(
            content=image.data,
            media_type=image.mime_type,
            headers={
                "Content-Length": str(image.size),
                "Cache-Control": "public, max-age=604800",
            },
        )

    else:
        raise HTTPException(status_code=400, detail=f"Invalid output format: {output}")


@router.get("/health")
async def health_check(
    processor: ImageProcessor = Depends(get_image_processor),
    cache: ImageCache = Depends(get_image_cache),
) -> JSONResponse:
    """
    Health check endpoint.

    Reports cache, scaler and processor state.
    """
    checks: dict[str, dict[str, object]] = {}
    overall_status = "healthy"

    try:
        stats = cache.get_stats()
        checks["image_cache"] = {
            "status": "healthy",
            **stats,
            "size_mb": round(stats["total_size"] / (1024 * 1024), 2),
        }
    except Exception as e:
        checks["image_cache"] = {"status": "unhealthy", "error": str(e)}
        overall_status = "degraded"

    try:
        usage = memory_usage(processor.current_memory_usage, processor.max_memory_usage)
        checks["processor"] = {
            "status": "healthy" if usage.percentage < 80 else "under_pressure",
            "queue_size": len(processor.queue),
            "active_processing": processor.active_processing,
            "memory": usage.to_dict(),
            "scaler_cache_entries": processor.scaler.cache_size,
        }
        if usage.percentage >= 80:
            overall_status = "degraded"
    except Exception as e:
        checks["processor"] = {"status": "unhealthy", "error": str(e)}
        overall_status = "degraded"

    return JSONResponse(
        content={
            "status": overall_status,
            "checks": checks,
        }
    )
