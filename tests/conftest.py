import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from filevault.core.config import Settings, get_settings
from filevault.core.security import Principal
from filevault.models.database import Base, get_db
from filevault.models.file import FileMeta  # noqa: F401  (registers the table)
from filevault.models.folder import Folder  # noqa: F401
from filevault.models.user import User
from filevault.services.files import FileManager, StagedUpload
from filevault.services.folders import FolderManager
from filevault.services.storage import StorageAdapter


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        _env_file=None,
        environment="test",
        storage_root=tmp_path / "storage",
        scratch_dir=tmp_path / "scratch",
        staging_dir=tmp_path / "staging",
        chunk_size=4,
        range_threshold_bytes=0,
        preview_timeout_seconds=5,
    )


@pytest.fixture()
def storage(settings):
    return StorageAdapter.from_settings(settings)


@pytest.fixture()
def folders(db_session, storage):
    return FolderManager(db_session, storage)


@pytest.fixture()
def files(db_session, storage, settings):
    return FileManager(db_session, storage, settings)


def _user(db_session, username, role):
    user = User(username=username, email=f"{username}@example.com", role=role)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def admin_user(db_session):
    return _user(db_session, "admin", "admin")


@pytest.fixture()
def reviewer_user(db_session):
    return _user(db_session, "reviewer", "sub-admin")


@pytest.fixture()
def alice_user(db_session):
    return _user(db_session, "alice", "user")


@pytest.fixture()
def bob_user(db_session):
    return _user(db_session, "bob", "user")


@pytest.fixture()
def admin(admin_user):
    return Principal.from_user(admin_user)


@pytest.fixture()
def reviewer(reviewer_user):
    return Principal.from_user(reviewer_user)


@pytest.fixture()
def alice(alice_user):
    return Principal.from_user(alice_user)


@pytest.fixture()
def bob(bob_user):
    return Principal.from_user(bob_user)


@pytest.fixture()
def stage(settings):
    """Write bytes into the staging area the way the upload boundary does."""

    def _stage(content: bytes, name: str = "report.pdf", mimetype: str = "application/pdf"):
        settings.staging_dir.mkdir(parents=True, exist_ok=True)
        path = settings.staging_dir / f"{uuid.uuid4().hex}.upload"
        path.write_bytes(content)
        return StagedUpload(path=path, original_name=name, mimetype=mimetype, size=len(content))

    return _stage


@pytest.fixture()
def client(db_session, settings):
    from filevault.main import app

    def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def login(client):
    """Switch the test client to another user (cookie auth)."""

    def _login(user):
        client.cookies.set("user_id", str(user.id))
        return client

    return _login
