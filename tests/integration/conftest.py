import os
import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import psycopg
import pytest

from intake.config.settings import Settings
from intake.database.connection import apply_schema, close_pool, get_connection, init_pool
from intake.database.models import UploadRecord
from intake.database.repositories.outbox_repository import OutboxRepository
from intake.database.repositories.upload_repository import UploadRepository


def _test_settings() -> Settings:
    os.environ.setdefault("DB_DATABASE", "intake_test")
    return Settings(_env_file=None)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    return _test_settings()


@pytest.fixture(scope="session")
def integration_pool(test_settings: Settings) -> Generator[None, None, None]:
    try:
        init_pool(test_settings)
        apply_schema()
    except Exception as e:
        close_pool()
        pytest.skip(
            f"PostgreSQL test DB not available: {e}. "
            "Set DB_* env to point at a scratch database"
        )
    try:
        yield
    finally:
        close_pool()


@pytest.fixture
def db_conn(integration_pool: None) -> Generator[psycopg.Connection[Any], None, None]:
    with get_connection() as conn:
        yield conn


@pytest.fixture
def owner_id(integration_pool: None) -> Generator[str, None, None]:
    """A fresh owner per test; every row it owns is removed afterwards."""
    owner = f"owner-{uuid.uuid4()}"
    yield owner
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM outbox_events WHERE owner_id = %s", (owner,))
            cur.execute("DELETE FROM upload_records WHERE owner_id = %s", (owner,))
        conn.commit()


@pytest.fixture
def upload_repo(integration_pool: None) -> UploadRepository:
    return UploadRepository()


@pytest.fixture
def outbox_repo(integration_pool: None) -> OutboxRepository:
    return OutboxRepository()


@pytest.fixture
def seed_pending(
    upload_repo: UploadRepository,
    owner_id: str,
    test_settings: Settings,
) -> Callable[[], UploadRecord]:
    def _seed() -> UploadRecord:
        upload_id = str(uuid.uuid4())
        return upload_repo.create_pending(
            upload_id=upload_id,
            owner_id=owner_id,
            storage_key=f"{test_settings.quarantine_prefix}/{upload_id}",
            bucket=test_settings.artifact_bucket,
            original_filename="cv.pdf",
            declared_content_type="PDF",
            write_window_expiry=datetime.now(timezone.utc) + timedelta(seconds=15),
        )

    return _seed
