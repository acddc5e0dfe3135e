"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from src.api.config import settings
from src.api.routes import quotes
from src.core.background import BackgroundFetcher
from src.core.cache import ImageCache
from src.core.generator import QuoteImageGenerator
from src.core.processor import ImageProcessor
from src.core.scaler import ImageScaler
from src.utils.metrics import configure_logging

logger = logging.getLogger(__name__)

limiter = Limiter(
    key_func=get_remote_address,
    enabled=settings.rate_limit_enabled,
)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Handle rate limit exceeded errors."""
    from fastapi.responses import JSONResponse

    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please try again later."},
    )


def build_processor(cache: ImageCache) -> ImageProcessor:
    """Wire the rendering pipeline from settings."""
    fetcher = BackgroundFetcher(
        cache=cache,
        timeout_seconds=settings.background_timeout_seconds,
        max_bytes=settings.hosting_limits.max_file_size,
        backgrounds_dir=settings.backgrounds_dir,
    )
    generator = QuoteImageGenerator(font_path=settings.font_path, fetcher=fetcher)
    scaler = ImageScaler(limits=settings.hosting_limits)
    return ImageProcessor(
        generator=generator,
        scaler=scaler,
        cache=cache,
        max_retries=settings.processor_max_retries,
        retry_delay=settings.processor_retry_delay_seconds,
        max_concurrent=settings.processor_max_concurrent,
        max_memory_usage=settings.processor_max_memory_mb * 1024 * 1024,
        memory_wait_timeout=settings.processor_memory_wait_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan events."""
    logger.info("Starting application...")
    configure_logging(log_level=settings.log_level, log_format=settings.log_format)

    cache = ImageCache(
        max_entries=settings.cache_max_entries,
        max_age=settings.cache_max_age_seconds,
        max_size=settings.cache_max_size_mb * 1024 * 1024,
    )
    processor = build_processor(cache)
    await processor.generator.ensure_fonts_ready()
    await cache.start()
    await processor.start()

    app.state.cache = cache
    app.state.processor = processor
    logger.info("Application started successfully")

    yield

    logger.info("Shutting down application...")
    await processor.dispose()
    await cache.stop()
    cache.clear()
    logger.info("Application shut down successfully")


app = FastAPI(
    title="Quote Image Service",
    description="Renders shareable quote images with device-aware scaling",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)  # type: ignore[arg-type]

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(quotes.router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": "Quote Image Service",
        "version": "1.0.0",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
