import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import Settings
from database import Base, get_db
from main import app
from routers import rate_limit
from routers.dependencies import get_credit_ledger, get_video_orchestrator
from services.credits import CreditLedger
from services.providers import build_provider_registry
from services.storage import StorageMigrator
from services.video_events import LocalVideoEventBus
from services.video_generation import VideoOrchestrator


EVOLINK_BASE_URL = "https://api.evolink.test/v1"
KIE_BASE_URL = "https://api.kie.test"
CDN_HOST = "cdn.test"
PUBLIC_MEDIA_URL = "https://media.test"


def make_test_settings(**overrides) -> Settings:
    values = dict(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        JWT_SECRET="test-jwt-secret-with-enough-length",
        EVOLINK_API_KEY="evolink-test-key",
        EVOLINK_BASE_URL=EVOLINK_BASE_URL,
        KIE_API_KEY="kie-test-key",
        KIE_BASE_URL=KIE_BASE_URL,
        DEFAULT_AI_PROVIDER="evolink",
        AI_CALLBACK_BASE_URL="",
        STORAGE_BUCKET="videos-test",
        STORAGE_PUBLIC_URL=PUBLIC_MEDIA_URL,
        STORAGE_MAX_ATTEMPTS=3,
        STORAGE_RETRY_BASE_SECONDS=2.0,
        VIDEO_POLL_INTERVAL_SECONDS=30,
        VIDEO_POLL_MAX_FAILURES=3,
        VIDEO_POLL_BACKOFF_BASE_SECONDS=15,
        VIDEO_POLL_BACKOFF_MAX_SECONDS=120,
        VIDEO_UPLOAD_LEASE_SECONDS=900,
        VIDEO_PENDING_STALL_MINUTES=30,
    )
    values.update(overrides)
    return Settings(**values)


class FakeS3Client:
    """Records upload_fileobj calls; fails the next ``failures`` uploads."""

    def __init__(self):
        self.uploads = []
        self.failures = 0

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        if self.failures:
            self.failures -= 1
            raise OSError("upload interrupted")
        self.uploads.append({"bucket": bucket, "key": key, "body": fileobj.read(), "extra": ExtraArgs or {}})


class FakeVendor:
    """Scripted Evolink API and CDN served through httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.create_response = (
            200,
            {"id": "task-1", "status": "pending", "progress": 0, "task_info": {"estimated_time": 120}},
        )
        self.task_responses = {}
        self.video_status = 200
        self.video_bytes = b"\x00\x00\x00\x18ftypmp42"

    def complete(self, task_id="task-1", url=f"https://{CDN_HOST}/out/video.mp4"):
        self.task_responses[task_id] = (200, {"id": task_id, "status": "completed", "progress": 100, "results": [url]})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == CDN_HOST:
            return httpx.Response(
                self.video_status,
                content=self.video_bytes if self.video_status == 200 else b"upstream error",
                headers={"content-type": "video/mp4"},
            )
        if request.method == "POST" and request.url.path == "/v1/videos/generations":
            status, payload = self.create_response
            return httpx.Response(status, json=payload)
        if request.method == "GET" and request.url.path.startswith("/v1/tasks/"):
            task_id = request.url.path.rsplit("/", 1)[-1]
            status, payload = self.task_responses.get(task_id, (404, {"error": "task not found"}))
            return httpx.Response(status, json=payload)
        return httpx.Response(404, json={"error": "unexpected request"})

    def provider_requests(self):
        return [request for request in self.requests if request.url.host != CDN_HOST]


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'video_credits.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest.fixture
def ledger(session_maker):
    return CreditLedger(session_maker)


@pytest.fixture
def vendor():
    return FakeVendor()


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest_asyncio.fixture
async def vendor_client(vendor):
    async with httpx.AsyncClient(transport=httpx.MockTransport(vendor.handler)) as client:
        yield client


@pytest.fixture
def event_bus():
    return LocalVideoEventBus()


@pytest.fixture
def make_orchestrator(session_maker, ledger, vendor_client, s3_client, event_bus):
    def _make(**overrides) -> VideoOrchestrator:
        config = make_test_settings(**overrides)
        storage = StorageMigrator.from_settings(
            config,
            s3_client=s3_client,
            http_client=vendor_client,
            sleep=_no_sleep,
        )
        return VideoOrchestrator(
            ledger=ledger,
            providers=build_provider_registry(config, http_client=vendor_client),
            storage=storage,
            session_maker=session_maker,
            config=config,
            events=event_bus,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest_asyncio.fixture
async def api_client(session_maker, orchestrator):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_video_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_credit_ledger] = lambda: orchestrator.ledger
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_video_orchestrator, None)
    app.dependency_overrides.pop(get_credit_ledger, None)
