"""API request and response models."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, HttpUrl

from src.core.processor import ProcessingOptions


class QuoteImageRequest(BaseModel):
    """Request parameters for quote image generation."""

    content: str = Field(..., min_length=1, description="Quote text")
    author: str = Field(..., min_length=1, description="Quote author")
    site_name: Optional[str] = Field(
        default=None, description="Branding text; defaults to the configured site name"
    )
    background_url: Optional[HttpUrl] = Field(
        default=None, description="HTTP(S) URL of a background image"
    )
    width: Optional[int] = Field(
        default=None, ge=100, le=3840, description="Target device width in CSS pixels"
    )
    height: Optional[int] = Field(
        default=None, ge=100, le=3840, description="Target device height in CSS pixels"
    )
    device: Optional[Literal["desktop", "tablet", "mobile", "retina", "auto", "none"]] = Field(
        default="none",
        description="Detect target dimensions from request headers when width/height are unset",
    )
    quality: Optional[int] = Field(default=None, ge=1, le=100, description="Output quality")
    format: Optional[Literal["webp", "jpeg", "jpg", "png"]] = Field(
        default=None, description="Output image format"
    )
    priority: Optional[int] = Field(default=None, description="Scheduling priority in batches")
    output: Literal["base64", "json", "binary"] = Field(
        default="binary", description="Response format"
    )

    def to_processing_options(
        self,
        site_name: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> ProcessingOptions:
        """Convert to processor options, filling in resolved defaults."""
        return ProcessingOptions(
            content=self.content,
            author=self.author,
            site_name=self.site_name or site_name,
            background_url=str(self.background_url) if self.background_url else None,
            device_width=self.width or width,
            device_height=self.height or height,
            quality=self.quality,
            format=self.format,
            priority=self.priority,
        )


class BatchImageRequest(BaseModel):
    """Batch of quote image requests."""

    items: list[QuoteImageRequest] = Field(..., min_length=1, max_length=50)


class QuoteImageResponse(BaseModel):
    """Generated image data and metadata."""

    data: str = Field(..., description="Base64-encoded image data")
    format: str = Field(..., description="Image format (webp, jpeg, png)")
    mime_type: str = Field(..., description="MIME type of the image")
    width: int = Field(..., description="Image width in pixels")
    height: int = Field(..., description="Image height in pixels")
    size_bytes: int = Field(..., description="Size of the encoded image in bytes")
    processing_ms: int = Field(..., description="Processing time in milliseconds")


class BatchItemResponse(BaseModel):
    """Outcome of one batch item."""

    index: int
    task_id: str
    image: Optional[QuoteImageResponse] = None
    error: Optional[str] = None


class BatchImageResponse(BaseModel):
    """Partitioned batch outcome."""

    successful: list[BatchItemResponse]
    failed: list[BatchItemResponse]


class TaskStatusResponse(BaseModel):
    """Status of a tracked processing task."""

    id: str
    status: str
    progress: int
    retries: int
    error: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    priority: Optional[int] = None
