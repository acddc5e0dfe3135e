"""Task-tracked quote image processing with retries and memory backpressure."""

import asyncio
import gc
import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional

from PIL import Image

from src.api.config import (
    MEMORY_CHECK_INTERVAL_SECONDS,
    MEMORY_POLL_INTERVAL_SECONDS,
    MEMORY_PRESSURE_THRESHOLD,
    PROCESSOR_CLEANUP_INTERVAL_SECONDS,
)
from src.core.cache import ImageCache, ImageMetadata
from src.core.generator import QuoteImageGenerator, RenderRequest
from src.core.scaler import ImageScaler, ScalingOptions, UnsupportedFormatError
from src.utils.metrics import memory_usage, sample_process_memory

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], None]

EVENT_TASK_ERROR = "taskError"
EVENT_MEMORY_USAGE = "memoryUsage"
EVENT_CLEANUP = "cleanup"
EVENTS = (EVENT_TASK_ERROR, EVENT_MEMORY_USAGE, EVENT_CLEANUP)


class ImageProcessingError(Exception):
    """Raised when an image cannot be produced."""

    def __init__(
        self,
        message: str,
        code: str = "IMAGE_PROCESSING_FAILED",
        status_code: int = 500,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class TaskNotFoundError(LookupError):
    """Raised when a task id is not in the queue."""

    pass


class TaskStatus(str, Enum):
    """Lifecycle states of a processing task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ProcessingTask:
    """Tracked unit of work."""

    id: str
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    retries: int = 0
    error: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    memory_usage: Optional[int] = None
    priority: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class ProcessingOptions:
    """Everything needed to produce one quote image."""

    content: str
    author: str
    site_name: str
    background_url: Optional[str] = None
    device_width: Optional[int] = None
    device_height: Optional[int] = None
    quality: Optional[int] = None
    format: Optional[str] = None
    priority: Optional[int] = None
    max_retries: Optional[int] = None

    def to_render_request(self) -> RenderRequest:
        return RenderRequest(
            content=self.content,
            author=self.author,
            site_name=self.site_name,
            background_url=self.background_url,
        )


@dataclass
class ProcessedImage:
    """Final encoded image handed back to callers."""

    data: bytes
    mime_type: str
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def format(self) -> str:
        return self.mime_type.split("/", 1)[1]


@dataclass
class BatchItemResult:
    """Outcome of one batch member, paired with its input position."""

    index: int
    task_id: str
    image: Optional[ProcessedImage] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    """Partitioned batch outcome."""

    successful: List[BatchItemResult] = field(default_factory=list)
    failed: List[BatchItemResult] = field(default_factory=list)


class ImageProcessor:
    """Orchestrate rendering and scaling behind a task queue."""

    def __init__(
        self,
        generator: QuoteImageGenerator,
        scaler: ImageScaler,
        cache: Optional[ImageCache] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_concurrent: int = 3,
        max_memory_usage: int = 512 * 1024 * 1024,
        memory_wait_timeout: float = 30.0,
        memory_check_interval: float = MEMORY_CHECK_INTERVAL_SECONDS,
        memory_poll_interval: float = MEMORY_POLL_INTERVAL_SECONDS,
        cleanup_interval: float = PROCESSOR_CLEANUP_INTERVAL_SECONDS,
        memory_sampler: Callable[[], int] = sample_process_memory,
    ):
        """Initialize processor; retry_delay and intervals are in seconds."""
        self.generator = generator
        self.scaler = scaler
        self.cache = cache
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_concurrent = max_concurrent
        self.max_memory_usage = max_memory_usage
        self.memory_wait_timeout = memory_wait_timeout
        self.memory_check_interval = memory_check_interval
        self.memory_poll_interval = memory_poll_interval
        self.cleanup_interval = cleanup_interval
        self.memory_sampler = memory_sampler

        self.queue: Dict[str, ProcessingTask] = {}
        self.active_processing = 0
        self.current_memory_usage = 0

        self._listeners: Dict[str, List[EventHandler]] = {event: [] for event in EVENTS}
        self._monitor_task: Optional[asyncio.Task[None]] = None
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    def on(self, event: str, handler: EventHandler) -> None:
        """Subscribe to taskError, memoryUsage or cleanup events."""
        if event not in self._listeners:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        """Unsubscribe a handler."""
        if handler in self._listeners.get(event, []):
            self._listeners[event].remove(handler)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Processor event {event}: {payload}")
        for handler in list(self._listeners.get(event, [])):
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Error in {event} handler: {e}", exc_info=True)

    async def start(self) -> None:
        """Start memory monitoring and periodic cleanup."""
        self.current_memory_usage = self.memory_sampler()
        if self._monitor_task is None:
            self._monitor_task = asyncio.create_task(self._monitor_memory())
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"Image processor started (max_concurrent={self.max_concurrent}, "
            f"max_memory={self.max_memory_usage / (1024 * 1024):.0f}MB)"
        )

    async def dispose(self) -> None:
        """Stop background loops, drop all tasks and listeners."""
        for background_task in (self._monitor_task, self._cleanup_task):
            if background_task is None:
                continue
            background_task.cancel()
            try:
                await background_task
            except asyncio.CancelledError:
                pass
        self._monitor_task = None
        self._cleanup_task = None

        self.queue.clear()
        for handlers in self._listeners.values():
            handlers.clear()
        logger.info("Image processor disposed")

    async def process_image(self, options: ProcessingOptions) -> ProcessedImage:
        """
        Render, normalise and optionally scale a quote image.

        Results are cached by request parameters.

        Args:
            options: Quote content and output parameters

        Returns:
            Encoded image with its mime type and dimensions

        Raises:
            UnsupportedFormatError: If the requested format is not allowed
            ImageProcessingError: If rendering fails
        """
        if options.format and self._should_scale(options):
            self.scaler.validate_format(options.format)

        cache_key = self.generate_cache_key(options)
        if self.cache:
            entry = self.cache.get(cache_key)
            if entry:
                return ProcessedImage(
                    data=entry.buffer,
                    mime_type=f"image/{entry.metadata.format}",
                    width=entry.metadata.width,
                    height=entry.metadata.height,
                )

        try:
            initial = await self.render_initial_image(options)
            static_image = await self.convert_to_static_image(initial)
            final = await self.scale_for_device(static_image, options)
        except (UnsupportedFormatError, ImageProcessingError):
            raise
        except Exception as e:
            logger.error(f"Error processing quote image: {e}", exc_info=True)
            raise ImageProcessingError("Failed to process image") from e

        image = self.describe(final)
        if self.cache:
            self.cache.set(
                cache_key,
                final,
                ImageMetadata(
                    width=image.width,
                    height=image.height,
                    format=image.format,
                    quality=options.quality or 100,
                    size=image.size,
                    optimized=self._should_scale(options),
                    pixel_ratio=None,
                ),
            )
        return image

    def submit(self, options: ProcessingOptions) -> str:
        """Enqueue a pending task and return its id."""
        task_id = self.generate_task_id()
        self.queue[task_id] = ProcessingTask(id=task_id, priority=options.priority)
        return task_id

    async def run_task(self, task_id: str, options: ProcessingOptions) -> bytes:
        """Process a queued task while counting it as in flight."""
        self.active_processing += 1
        try:
            return await self.process_task(task_id, options)
        finally:
            self.active_processing -= 1

    async def process_task(self, task_id: str, options: ProcessingOptions) -> bytes:
        """Process one task, retrying with exponential backoff on failure."""
        task = self._get_task(task_id)
        task.status = TaskStatus.PROCESSING
        task.start_time = time.time()
        task.memory_usage = self.current_memory_usage

        try:
            if options.format and self._should_scale(options):
                self.scaler.validate_format(options.format)

            self.update_progress(task_id, 20)
            initial = await self.render_initial_image(options)

            self.update_progress(task_id, 50)
            static_image = await self.convert_to_static_image(initial)

            self.update_progress(task_id, 80)
            final = await self.scale_for_device(static_image, options)

            task.status = TaskStatus.COMPLETED
            task.progress = 100
            task.end_time = time.time()
            return final

        except TaskNotFoundError:
            raise
        except Exception as e:
            return await self.handle_error(task_id, e, options)

    async def handle_error(
        self, task_id: str, error: Exception, options: ProcessingOptions
    ) -> bytes:
        """Retry the task or mark it failed once retries are exhausted."""
        task = self._get_task(task_id)
        max_retries = options.max_retries if options.max_retries is not None else self.max_retries
        task.error = str(error) or type(error).__name__

        retryable = not isinstance(error, UnsupportedFormatError)
        if retryable and task.retries < max_retries:
            task.retries += 1
            task.status = TaskStatus.PENDING
            delay = self.retry_delay * (2 ** (task.retries - 1))
            logger.warning(
                f"Task {task_id} failed ({task.error}), retry {task.retries}/{max_retries} "
                f"in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            return await self.process_task(task_id, options)

        task.status = TaskStatus.FAILED
        task.end_time = time.time()
        logger.error(f"Task {task_id} failed after {task.retries} retries: {task.error}")
        self.emit(
            EVENT_TASK_ERROR,
            {"taskId": task_id, "error": task.error, "retries": task.retries},
        )

        if isinstance(error, (ImageProcessingError, UnsupportedFormatError)):
            raise error
        raise ImageProcessingError(
            "Failed to process image after multiple retries"
        ) from error

    async def process_batch(self, batch: List[ProcessingOptions]) -> BatchResult:
        """
        Process many requests in chunks of max_concurrent.

        Chunks run one after another; memory pressure is checked after each.
        Higher priority requests are scheduled first.

        Args:
            batch: Requests to process

        Returns:
            Successful and failed items, each carrying its input index
        """
        result = BatchResult()
        order = sorted(range(len(batch)), key=lambda i: -(batch[i].priority or 0))
        submitted = [(index, self.submit(batch[index]), batch[index]) for index in order]

        for start in range(0, len(submitted), self.max_concurrent):
            chunk = submitted[start : start + self.max_concurrent]
            outcomes = await asyncio.gather(
                *(self.run_task(task_id, options) for _, task_id, options in chunk),
                return_exceptions=True,
            )

            for (index, task_id, _), outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    result.failed.append(
                        BatchItemResult(index=index, task_id=task_id, error=str(outcome))
                    )
                else:
                    result.successful.append(
                        BatchItemResult(
                            index=index, task_id=task_id, image=self.describe(outcome)
                        )
                    )

            await self.check_memory_usage()

        logger.info(
            f"Batch processed: {len(result.successful)} succeeded, {len(result.failed)} failed"
        )
        return result

    async def check_memory_usage(self) -> bool:
        """
        Wait until memory usage drops below the pressure threshold.

        Gives up after memory_wait_timeout seconds and lets work proceed.

        Returns:
            True if usage is under the threshold, False on timeout
        """
        threshold = self.max_memory_usage * MEMORY_PRESSURE_THRESHOLD
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.memory_wait_timeout

        while self.current_memory_usage >= threshold:
            if loop.time() >= deadline:
                logger.warning(
                    f"Memory usage still {self.current_memory_usage / (1024 * 1024):.0f}MB "
                    f"after {self.memory_wait_timeout}s, proceeding"
                )
                return False
            await asyncio.sleep(self.memory_poll_interval)
            self.current_memory_usage = self.memory_sampler()

        return True

    def cleanup(self) -> None:
        """Purge finished tasks, sweep both caches and collect garbage."""
        self.clear_completed_tasks()
        if self.cache:
            self.cache.cleanup()
        self.scaler.cleanup()
        gc.collect()

        self.emit(
            EVENT_CLEANUP,
            {
                "queueSize": len(self.queue),
                "activeProcessing": self.active_processing,
                "memoryUsage": self.current_memory_usage,
            },
        )

    def get_task_status(self, task_id: str) -> Optional[ProcessingTask]:
        return self.queue.get(task_id)

    def clear_completed_tasks(self) -> int:
        """Remove completed and failed tasks, returning how many were removed."""
        finished = [task_id for task_id, task in self.queue.items() if task.is_terminal]
        for task_id in finished:
            del self.queue[task_id]
        return len(finished)

    def update_progress(self, task_id: str, progress: int) -> None:
        task = self._get_task(task_id)
        task.progress = min(100, max(0, progress))

    async def render_initial_image(self, options: ProcessingOptions) -> bytes:
        return await self.generator.generate(options.to_render_request())

    async def convert_to_static_image(self, buffer: bytes) -> bytes:
        """Re-encode as a single-frame RGB PNG."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _reencode_png, buffer)

    async def scale_for_device(self, buffer: bytes, options: ProcessingOptions) -> bytes:
        if not self._should_scale(options):
            return buffer

        return await self.scaler.scale_for_device(
            buffer,
            options.device_width or 0,
            options.device_height or 0,
            ScalingOptions(
                quality=options.quality,
                format=options.format,
                preserve_text=True,
            ),
        )

    def describe(self, buffer: bytes) -> ProcessedImage:
        """Wrap encoded bytes with their mime type and dimensions."""
        with Image.open(BytesIO(buffer)) as image:
            image_format = (image.format or "png").lower()
            return ProcessedImage(
                data=buffer,
                mime_type=f"image/{image_format}",
                width=image.width,
                height=image.height,
            )

    def generate_cache_key(self, options: ProcessingOptions) -> str:
        """Generate a cache key from the request parameters."""
        key_parts = [
            options.content,
            options.author,
            options.site_name,
            options.background_url or "none",
            str(options.device_width) if options.device_width else "auto",
            str(options.device_height) if options.device_height else "auto",
            str(options.quality) if options.quality else "auto",
            (options.format or "auto").lower(),
        ]
        key_hash = hashlib.sha256("|".join(key_parts).encode()).hexdigest()[:16]
        return f"quote:{key_hash}"

    def generate_task_id(self) -> str:
        return f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    def _should_scale(self, options: ProcessingOptions) -> bool:
        return bool(options.device_width and options.device_height)

    def _get_task(self, task_id: str) -> ProcessingTask:
        task = self.queue.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    async def _monitor_memory(self) -> None:
        while True:
            self.current_memory_usage = self.memory_sampler()
            self.emit(
                EVENT_MEMORY_USAGE,
                memory_usage(self.current_memory_usage, self.max_memory_usage).to_dict(),
            )
            await asyncio.sleep(self.memory_check_interval)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()


def _reencode_png(buffer: bytes) -> bytes:
    with Image.open(BytesIO(buffer)) as image:
        image.seek(0)
        static_image = image.convert("RGB")

    output = BytesIO()
    static_image.save(output, format="PNG")
    return output.getvalue()
