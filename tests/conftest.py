"""LeadZap – Pytest Configuration.

Shared fixtures for all tests.
"""

import os

# Force testing mode to allow SQLite fallback in app/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["WHATSAPP_CLOUD_ACCESS_TOKEN"] = ""
os.environ["WHATSAPP_SERVER_URL"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from unittest.mock import AsyncMock

from app.core.auth import create_access_token
from app.core.crypto import encrypt_value
from app.core.db import Base, SessionLocal, engine, run_migrations
from app.core.models import Company, UserAccount, WhatsAppContact
from app.gateway.main import app

run_migrations()


@pytest.fixture(autouse=True)
def mock_redis_bus():
    """Mock RedisBus for all tests."""
    from app.gateway.dependencies import redis_bus

    redis_bus.connect = AsyncMock()
    redis_bus.disconnect = AsyncMock()
    redis_bus.publish = AsyncMock()
    redis_bus.publish_message_status = AsyncMock()
    redis_bus.health_check = AsyncMock(return_value=True)
    return redis_bus


@pytest.fixture(autouse=True)
def clean_db():
    """Empty every table before each test."""
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client():
    """Async test client for the FastAPI gateway."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _add(obj):
    db = SessionLocal()
    try:
        db.add(obj)
        db.commit()
        db.refresh(obj)
        return obj
    finally:
        db.close()


@pytest.fixture
def company():
    return _add(Company(
        slug="acme",
        name="Acme Imóveis",
        whatsapp_mode="cloud",
        whatsapp_phone_number_id="1098765",
        whatsapp_access_token=encrypt_value("meta-token"),
    ))


@pytest.fixture
def user(company):
    return _add(UserAccount(company_id=company.id, email="agent@acme.test", full_name="Agent", role="admin"))


@pytest.fixture
def auth_headers(user):
    token = create_access_token(user_id=user.id, email=user.email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def contact(company):
    return _add(WhatsAppContact(
        company_id=company.id,
        phone="5583999990001",
        normalized_phone="5583999990001",
        name="Maria",
    ))
