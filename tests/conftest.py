import pytest
import io
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from image_service.crud import ImageCatalog
from image_service.database import enable_sqlite_foreign_keys, init_db
from image_service.errors import ObjectNotFound, StorageUnavailable
from image_service.image_processor import ImageProcessor

# Test fixtures and utilities


class InMemoryStorage:
    """Object store double honouring the StorageGateway contract."""

    def __init__(self, upload_url_expiry: int = 180):
        self.objects = {}
        self.content_types = {}
        self.issued = []
        self.upload_url_expiry = upload_url_expiry
        self.fail_credentials = False
        self.fail_puts = False
        self.fail_gets = False
        self.healthy = True

    async def issue_write_credential(self, key, content_type):
        if self.fail_credentials:
            raise StorageUnavailable("Failed to generate pre-signed url")
        self.issued.append((key, content_type))
        return f"https://storage.test/bucket/{key}?X-Amz-Expires={self.upload_url_expiry}"

    async def put_object(self, key, data, content_type):
        if self.fail_puts:
            raise StorageUnavailable("Failed to upload object to storage")
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type

    async def get_object(self, key):
        if self.fail_gets:
            raise StorageUnavailable("Failed to fetch object from storage")
        if key not in self.objects:
            raise ObjectNotFound()
        return self.objects[key]

    def check_connection(self):
        if not self.healthy:
            raise StorageUnavailable("Object storage is unreachable")
        return True


def make_image_bytes(size=(200, 100), color="red", fmt="PNG", mode="RGB"):
    image = Image.new(mode, size, color=color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def db_engine():
    """In-memory SQLite engine shared across sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    init_db(bind=engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)


@pytest.fixture
def catalog(session_factory):
    return ImageCatalog(session_factory)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def processor():
    return ImageProcessor(max_image_pixels=50_000_000)


@pytest.fixture
def test_image_file():
    """Create a test image file."""
    return {
        'filename': 'test_image.png',
        'content': make_image_bytes(),
        'content_type': 'image/png'
    }


@pytest.fixture
def test_jpeg_file():
    return {
        'filename': 'test_image.jpg',
        'content': make_image_bytes(size=(320, 240), color='blue', fmt='JPEG'),
        'content_type': 'image/jpeg'
    }


@pytest.fixture
def invalid_image_file():
    """Create an invalid image file."""
    return {
        'filename': 'invalid.txt',
        'content': b'This is not an image',
        'content_type': 'text/plain'
    }


@pytest.fixture
def current_user():
    """Mutable identity returned by the overridden auth dependency."""
    return {"user_id": 1, "email": "owner@example.com"}


@pytest.fixture
def client(catalog, storage, processor, current_user):
    """API client wired to the in-memory catalog and object store."""
    from image_service.main import app, get_catalog, get_storage, get_processor
    from image_service.auth_client import get_current_user

    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_current_user] = lambda: dict(current_user)

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer test-token"}


# Test markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "unit: mark test as unit test"
    )
