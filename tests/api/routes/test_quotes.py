"""Tests for quote image API endpoints."""

import base64
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeGenerator
from src.api.routes.quotes import GENERIC_FAILURE, get_image_processor, router
from src.core.processor import ImageProcessingError, ImageProcessor, ProcessingOptions
from src.core.scaler import UnsupportedFormatError

QUOTE = {"content": "Stay hungry, stay foolish.", "author": "Steve Jobs"}


class TestQuoteImageEndpoint:
    """Test the quote image endpoint."""

    @pytest.fixture
    def app(self, processor: ImageProcessor) -> FastAPI:
        """Create test FastAPI app."""
        app = FastAPI()
        app.include_router(router)
        app.state.processor = processor
        app.state.cache = processor.cache
        return app

    @pytest.fixture
    def client(self, app: FastAPI) -> TestClient:
        """Create test client."""
        return TestClient(app)

    def test_binary_output(self, client: TestClient) -> None:
        """Test the default response is the raw PNG."""
        response = client.post("/api/v1/quotes/image", json=QUOTE)

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content.startswith(b"\x89PNG")

    def test_json_output_scaled(self, client: TestClient) -> None:
        """Test explicit dimensions scale the render."""
        response = client.post(
            "/api/v1/quotes/image",
            json={**QUOTE, "width": 375, "height": 667, "format": "webp", "output": "json"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["format"] == "webp"
        assert data["mime_type"] == "image/webp"
        assert (data["width"], data["height"]) == (750, 1334)
        assert data["size_bytes"] == len(base64.b64decode(data["data"]))

    def test_base64_output(self, client: TestClient) -> None:
        response = client.post("/api/v1/quotes/image", json={**QUOTE, "output": "base64"})

        assert response.status_code == 200
        assert response.text.startswith("data:image/png;base64,")

    def test_device_auto_detection(
        self, client: TestClient, app: FastAPI, processor: ImageProcessor
    ) -> None:
        """Test device=auto resolves dimensions from the User-Agent."""
        captured: list[ProcessingOptions] = []
        original = processor.process_image

        async def recording_process_image(options: ProcessingOptions):  # type: ignore[no-untyped-def]
            captured.append(options)
            return await original(options)

        processor.process_image = recording_process_image  # type: ignore[method-assign]

        response = client.post(
            "/api/v1/quotes/image",
            json={**QUOTE, "device": "auto", "output": "json"},
            headers={"User-Agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)"},
        )

        assert response.status_code == 200
        assert (captured[0].device_width, captured[0].device_height) == (375, 667)

    def test_empty_content_rejected(self, client: TestClient) -> None:
        response = client.post("/api/v1/quotes/image", json={"content": "", "author": "Anon"})
        assert response.status_code == 422

    def test_local_background_rejected(self, client: TestClient) -> None:
        """Test server file paths cannot be used as backgrounds."""
        response = client.post(
            "/api/v1/quotes/image", json={**QUOTE, "background_url": "/etc/hostname"}
        )
        assert response.status_code == 422

    def test_unsupported_format(self, client: TestClient, app: FastAPI) -> None:
        """Test format rejections map to 400."""

        def mock_processor():
            service = MagicMock()
            service.process_image = AsyncMock(
                side_effect=UnsupportedFormatError("Unsupported format: tiff")
            )
            return service

        app.dependency_overrides[get_image_processor] = mock_processor

        try:
            response = client.post("/api/v1/quotes/image", json=QUOTE)

            assert response.status_code == 400
            assert "unsupported format" in response.json()["detail"].lower()
        finally:
            app.dependency_overrides.clear()

    def test_processing_error_is_generic(self, client: TestClient, app: FastAPI) -> None:
        """Test processing failures do not leak internals."""

        def mock_processor():
            service = MagicMock()
            service.process_image = AsyncMock(
                side_effect=ImageProcessingError("font table exploded at 0x1f")
            )
            return service

        app.dependency_overrides[get_image_processor] = mock_processor

        try:
            response = client.post("/api/v1/quotes/image", json=QUOTE)

            assert response.status_code == 500
            assert response.json()["detail"] == GENERIC_FAILURE
        finally:
            app.dependency_overrides.clear()

    def test_unexpected_error(self, client: TestClient, app: FastAPI) -> None:
        """Test quote endpoint handles unexpected errors."""

        def mock_processor():
            service = MagicMock()
            service.process_image = AsyncMock(side_effect=Exception("Unexpected error"))
            return service

        app.dependency_overrides[get_image_processor] = mock_processor

        try:
            response = client.post("/api/v1/quotes/image", json=QUOTE)

            assert response.status_code == 500
            assert "internal server error" in response.json()["detail"].lower()
        finally:
            app.dependency_overrides.clear()


class TestBatchAndTasks:
    """Test batch generation, task lookup and health."""

    @pytest.fixture
    def app(self, processor: ImageProcessor) -> FastAPI:
        app = FastAPI()
        app.include_router(router)
        app.state.processor = processor
        app.state.cache = processor.cache
        return app

    @pytest.fixture
    def client(self, app: FastAPI) -> TestClient:
        return TestClient(app)

    def test_batch_partitions_results(
        self, client: TestClient, fake_generator: FakeGenerator
    ) -> None:
        """Test failed items are reported by index with a generic message."""
        fake_generator.fail_when = lambda request, calls: request.content == "bad"

        response = client.post(
            "/api/v1/quotes/images/batch",
            json={
                "items": [
                    QUOTE,
                    {"content": "bad", "author": "Anon"},
                    {**QUOTE, "width": 375, "height": 667, "format": "jpeg"},
                ]
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert [item["index"] for item in data["successful"]] == [0, 2]
        assert data["successful"][1]["image"]["mime_type"] == "image/jpeg"
        assert [item["index"] for item in data["failed"]] == [1]
        assert data["failed"][0]["error"] == GENERIC_FAILURE

    def test_task_status(self, client: TestClient, processor: ImageProcessor) -> None:
        task_id = processor.submit(ProcessingOptions(content="Quote", author="Anon", site_name="Quoticon", priority=2))

        response = client.get(f"/api/v1/tasks/{task_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == task_id
        assert data["status"] == "pending"
        assert data["progress"] == 0
        assert data["priority"] == 2

    def test_task_not_found(self, client: TestClient) -> None:
        response = client.get("/api/v1/tasks/task_missing")
        assert response.status_code == 404

    def test_health_endpoint(self, client: TestClient) -> None:
        """Test health check endpoint."""
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["image_cache"]["entries"] == 0
        assert data["checks"]["processor"]["queue_size"] == 0
        assert data["checks"]["processor"]["memory"]["percentage"] < 80
