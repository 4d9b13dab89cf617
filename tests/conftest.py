"""
Shared fixtures for expense lifecycle tests.

Persistence runs against a throwaway SQLite file per test. Storage, receipt
analysis and email are in-memory fakes that record what they were asked to
do, so tests can assert on side effects as well as on returned rows.
"""

import io

import httpx
import pytest
from PIL import Image

from commons.api.dependencies import get_database_service, get_expense_service, get_storage
from commons.config import Settings
from commons.errors import NotificationError, UploadError
from commons.main import app
from commons.models.schemas import ExpenseSubmission, MemberCreate
from commons.services.ai_agent import ReceiptAnalysis
from commons.services.database_service import DatabaseService
from commons.services.expense_service import ExpenseLifecycleService

PAYOUT_ADDRESS = "0x" + "a" * 40
ADMIN_EMAIL = "admin@example.com"


class FakeStorage:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploads = []

    async def upload(self, data, file_name, mime_type, folder):
        if self.fail:
            raise UploadError("Upload failed: storage unavailable", folder=folder)
        self.uploads.append({"data": data, "file_name": file_name, "mime_type": mime_type, "folder": folder})
        return f"https://files.test/{folder}/{len(self.uploads)}-{file_name}"

    async def check_health(self):
        return not self.fail


class FakeAnalyzer:
    def __init__(self, result=None, error=None):
        self.result = result if result is not None else ReceiptAnalysis(title="Receipt scan")
        self.error = error
        self.calls = []

    async def analyze_receipt(self, image_url):
        self.calls.append(image_url)
        if self.error is not None:
            raise self.error
        return self.result


class FakeNotifier:
    """Records sends; can report failure or raise outright"""

    def __init__(self, fail=False, raise_error=False):
        self.fail = fail
        self.raise_error = raise_error
        self.sent = []

    async def send(self, kind, recipient, data):
        self.sent.append((kind, recipient, data))
        if self.raise_error:
            raise NotificationError("mail server unreachable")
        return not self.fail


@pytest.fixture
def settings():
    return Settings(admin_emails=[ADMIN_EMAIL], max_upload_bytes=1024 * 1024)


@pytest.fixture
async def db(tmp_path):
    database = DatabaseService(f"sqlite+aiosqlite:///{tmp_path / 'commons.db'}", echo=False)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def service(db, storage, analyzer, notifier, settings):
    return ExpenseLifecycleService(db, storage, analyzer, notifier, settings)


@pytest.fixture
async def member(service):
    return await service.register_member(MemberCreate(name="Ada Builder", email="ada@example.com"))


@pytest.fixture
def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


def make_submission(member, **overrides):
    fields = {
        "title": "Conference ticket",
        "amount_cents": 15000,
        "payout_address": PAYOUT_ADDRESS,
        "submitted_by": member.id,
        "modification_key": member.modification_key,
    }
    fields.update(overrides)
    return ExpenseSubmission(**fields)


@pytest.fixture
async def client(service, db, storage):
    app.dependency_overrides[get_expense_service] = lambda: service
    app.dependency_overrides[get_database_service] = lambda: db
    app.dependency_overrides[get_storage] = lambda: storage
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()
