"""
Pytest configuration and shared fixtures.

Settings are read from the environment at import time, so the test
environment is set here before any chat_ingest import.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chat_ingest.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

# Clear settings cache before any app imports to ensure test env vars are used
from chat_ingest.config import get_settings  # noqa: E402

get_settings.cache_clear()

from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from chat_ingest.config import settings  # noqa: E402
from chat_ingest.main import app  # noqa: E402
from chat_ingest.models import Contact, Deal, Organization, WebhookSource  # noqa: E402
from chat_ingest.storage import Base, SessionLocal, engine  # noqa: E402

WEBHOOK_PREFIX = settings.WEBHOOK_PATH_PREFIX
ADMIN_HEADERS = {"X-Api-Key": "test-admin-key"}


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


def add_rows(*rows):
    with SessionLocal(expire_on_commit=False) as db:
        db.add_all(rows)
        db.commit()


@pytest.fixture
def tenant(client):
    """An organization with one active webhook source."""
    org = Organization(name="Acme Imóveis")
    add_rows(org)
    source = WebhookSource(organization_id=org.id, token="tok-acme")
    add_rows(source)
    return SimpleNamespace(
        organization_id=org.id,
        source_id=source.id,
        token="tok-acme",
        url=f"{WEBHOOK_PREFIX}/tok-acme",
        headers={**ADMIN_HEADERS, "X-Organization-Id": org.id},
    )


@pytest.fixture
def other_tenant(client):
    org = Organization(name="Beta Seguros")
    add_rows(org)
    source = WebhookSource(organization_id=org.id, token="tok-beta")
    add_rows(source)
    return SimpleNamespace(
        organization_id=org.id,
        source_id=source.id,
        token="tok-beta",
        url=f"{WEBHOOK_PREFIX}/tok-beta",
        headers={**ADMIN_HEADERS, "X-Organization-Id": org.id},
    )


@pytest.fixture
def make_contact(tenant):
    """Factory adding a contact (and optionally deals) to the tenant."""
    def _make(phone, name="Cliente", deals=(), organization_id=None, created_at=None):
        org_id = organization_id or tenant.organization_id
        contact = Contact(organization_id=org_id, phone=phone, name=name)
        if created_at:
            contact.created_at = created_at
        add_rows(contact)
        deal_ids = []
        for title, deal_created_at in deals:
            deal = Deal(
                organization_id=org_id,
                contact_id=contact.id,
                title=title,
                created_at=deal_created_at,
            )
            add_rows(deal)
            deal_ids.append(deal.id)
        return SimpleNamespace(id=contact.id, deal_ids=deal_ids)

    return _make
