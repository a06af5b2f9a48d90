"""pytest fixtures for image studio tests.

Provides:
- settings: Test settings (memory blob backend, default limits)
- blob_backend / blob_client: In-memory object store
- gemini_handler / gemini_client: Hosted endpoint backed by httpx.MockTransport
- executor: Real executor wired to the fakes above
- controlled_executor: Executor stand-in whose calls are resolved by the test
"""

import os
from typing import Callable

import httpx
import pytest
from helpers import PNG_BYTES, ControlledExecutor, GeminiHandler

from imagestudio.core.config import Settings
from imagestudio.services.files import ReferenceFile
from imagestudio.services.generation.executor import GenerationExecutor
from imagestudio.services.generation.gemini_client import GeminiImageClient
from imagestudio.services.storage.backends import MemoryBlobBackend
from imagestudio.services.storage.client import BlobStoreClient


@pytest.fixture(scope="session", autouse=True)
def test_environment():
    """Run every test with APP_ENV=test so storage credentials are never required."""
    os.environ["APP_ENV"] = "test"
    yield


@pytest.fixture
def settings() -> Settings:
    return Settings(app_env="test", blob_backend="memory")  # type: ignore[call-arg]


@pytest.fixture
def blob_backend() -> MemoryBlobBackend:
    return MemoryBlobBackend()


@pytest.fixture
def blob_client(blob_backend) -> BlobStoreClient:
    return BlobStoreClient(blob_backend)


@pytest.fixture
def gemini_handler() -> GeminiHandler:
    return GeminiHandler()


@pytest.fixture
def gemini_client(gemini_handler) -> GeminiImageClient:
    return GeminiImageClient(
        base_url="https://gemini.test/v1beta",
        model="gemini-2.5-flash-image-preview",
        timeout=5.0,
        transport=httpx.MockTransport(gemini_handler),
    )


@pytest.fixture
def executor(gemini_client, blob_client, settings) -> GenerationExecutor:
    return GenerationExecutor(gemini_client, blob_client, settings)


@pytest.fixture
def make_reference() -> Callable[..., ReferenceFile]:
    def factory(
        name: str = "ref.png", content_type: str = "image/png", data: bytes = PNG_BYTES
    ) -> ReferenceFile:
        return ReferenceFile(name=name, content_type=content_type, data=data)

    return factory


@pytest.fixture
def controlled_executor() -> ControlledExecutor:
    return ControlledExecutor()
