import base64
import io
import os

# Settings are read at import time; keep the app off the developer database
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TEST_MODE", "false")

import pytest
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from imgflow.config import get_settings
from imgflow.database import init_db
from imgflow.models.task import TaskType
from imgflow.services import task_queue
from imgflow.services.executor import StepExecutor
from imgflow.services.providers.base import BackgroundReplaceProvider, ImageResult
from imgflow.services.storage_service import StorageService
from imgflow.utils import metrics
from imgflow.worker import TaskProcessor


def png_data_url(color=(200, 30, 30), size=(64, 48)) -> str:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


RED = png_data_url((200, 30, 30))
GREEN = png_data_url((30, 200, 30))
BLUE = png_data_url((30, 30, 200))
GREY = png_data_url((128, 128, 128))


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}",
        connect_args={"timeout": 30},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


# ---------------------------------------------------------------------------
# Providers and storage
# ---------------------------------------------------------------------------

class FakeReplacer(BackgroundReplaceProvider):
    def __init__(self, provider, result=GREEN, error=None):
        self.provider = provider
        self.result = result
        self.error = error
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return ImageResult(image_data=self.result, image_size=10)


class FakeVolcengine:
    """Scripted outpaint/enhance. ``*_errors`` are raised in order before succeeding."""

    def __init__(self, outpaint_errors=None, enhance_errors=None):
        self.outpaint_errors = list(outpaint_errors or [])
        self.enhance_errors = list(enhance_errors or [])
        self.outpaint_calls = []
        self.enhance_calls = []

    async def outpaint(self, image, user_id, **params):
        self.outpaint_calls.append((image, params))
        if self.outpaint_errors:
            raise self.outpaint_errors.pop(0)
        return ImageResult(image_data=BLUE, metadata={"expandRatio": params.get("top")})

    async def enhance(self, image, user_id, **params):
        self.enhance_calls.append((image, params))
        if self.enhance_errors:
            raise self.enhance_errors.pop(0)
        return ImageResult(image_data=GREY, metadata={"resolutionBoundary": params.get("resolution_boundary")})


class FakeRegistry:
    def __init__(self, replacer_error=None, volcengine=None):
        self.replacer_error = replacer_error
        self.replacers = []
        self.volc = volcengine or FakeVolcengine()

    def background_replacer(self, provider):
        replacer = FakeReplacer(provider, error=self.replacer_error)
        self.replacers.append(replacer)
        return replacer

    def volcengine(self):
        return self.volc


@pytest.fixture
def storage(tmp_path):
    return StorageService(base_dir=str(tmp_path / "uploads"), public_base_url="http://testserver")


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def executor(session_factory, storage, registry):
    return StepExecutor(session_factory, storage=storage, registry_factory=lambda lease: registry)


@pytest.fixture
def processor(session_factory, executor):
    return TaskProcessor(session_factory=session_factory, executor=executor, settings=get_settings())


# ---------------------------------------------------------------------------
# Task helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def enqueue(db):
    async def _enqueue(task_type=TaskType.WATERMARK, input_data=None, user_id="user_test", **kwargs):
        return await task_queue.enqueue_task(
            db, user_id, task_type, input_data if input_data is not None else {"imageUrl": RED}, **kwargs
        )

    return _enqueue


async def fetch(session_factory, task_id):
    async with session_factory() as session:
        return await task_queue.get_task(session, task_id)
