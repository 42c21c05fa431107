"""
Pytest configuration and fixtures for testing.

This module provides common fixtures for:
- Settings with short lifetimes and the Redis client cache disabled
- Database session management (in-memory and file-backed SQLite)
- Webhook delivery through an inline executor and httpx.MockTransport
- Test client for API testing
- Registered OAuth clients
"""

import pytest
from concurrent.futures import Executor, Future
from typing import Generator

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import federation.models  # noqa: F401  registers every table on Base.metadata
from federation.core.cache import NullClientCache
from federation.core.clients import ClientRegistry
from federation.core.config import Settings, get_settings
from federation.core.crypto import PKCEHandler
from federation.core.database import Base, get_db
from federation.core.dependencies import get_webhook_dispatcher
from federation.core.events import EventLogger, WebhookDispatcher

ADMIN_KEY = "test-admin-key"
SERVICE_KEY = "test-service-key"
ACME_REDIRECT_URI = "https://acme.example.com/cb"


# ==================== SETTINGS FIXTURES ====================

@pytest.fixture(scope="function")
def test_settings() -> Settings:
    """Settings for tests: no Redis, no background loops, fast webhook backoff."""
    return Settings(
        app_env="testing",
        debug=False,
        client_cache_enabled=False,
        reaper_enabled=False,
        admin_api_key=ADMIN_KEY,
        sso_service_key=SERVICE_KEY,
        consent_request_secret="test-consent-secret",
        login_url="https://id.example.com/login",
        consent_url="https://id.example.com/consent",
        webhook_max_attempts=3,
        webhook_backoff_base_seconds=10,
        webhook_backoff_max_seconds=60,
        reaper_batch_size=2,
        sso_apps={
            "wallet": "https://wallet.example.com",
            "merchant": "https://merchant.example.com",
        },
    )


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="session")
def test_db_engine():
    """Create an in-memory SQLite engine shared by every session of a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture(scope="function")
def db_session(test_db_engine, session_factory):
    """Create a fresh database session for each test."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        # Clear all tables for next test
        Base.metadata.drop_all(bind=test_db_engine)
        Base.metadata.create_all(bind=test_db_engine)


@pytest.fixture(scope="function")
def file_db_engine(tmp_path):
    """
    File-backed SQLite engine for tests that race threads against each other.

    Every thread must use its own session; SQLite serializes the writers.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'federation-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def file_session_factory(file_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=file_db_engine)


@pytest.fixture(scope="function")
def override_get_db(db_session):
    """Override the get_db dependency to use test database."""
    def _override_get_db() -> Generator:
        yield db_session
    return _override_get_db


# ==================== WEBHOOK FIXTURES ====================

class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Holds submitted work until ``run_all`` is called, like a busy thread pool."""

    def __init__(self):
        self.queue = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.queue.append((future, fn, args, kwargs))
        return future

    def run_all(self):
        pending, self.queue = self.queue, []
        for future, fn, args, kwargs in pending:
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)


class WebhookReceiver:
    """Records webhook requests and answers with a configurable status."""

    def __init__(self):
        self.requests = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"received": True})

    @property
    def events(self):
        return [request.headers["X-Webhook-Event"] for request in self.requests]


@pytest.fixture(scope="function")
def webhook_receiver():
    return WebhookReceiver()


@pytest.fixture(scope="function")
def webhook_dispatcher(session_factory, test_settings, webhook_receiver):
    """Dispatcher that delivers synchronously to the recording receiver."""
    dispatcher = WebhookDispatcher(
        session_factory=session_factory,
        settings=test_settings,
        transport=httpx.MockTransport(webhook_receiver),
        executor=InlineExecutor(),
    )
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture(scope="function")
def deferred_dispatcher(session_factory, test_settings, webhook_receiver):
    """Dispatcher whose queued deliveries only run when ``dispatcher.executor.run_all()`` is called."""
    dispatcher = WebhookDispatcher(
        session_factory=session_factory,
        settings=test_settings,
        transport=httpx.MockTransport(webhook_receiver),
        executor=DeferredExecutor(),
    )
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture(scope="function")
def event_logger(db_session, test_settings, webhook_dispatcher):
    return EventLogger(db_session, test_settings, dispatcher=webhook_dispatcher)


# ==================== CLIENT REGISTRY FIXTURES ====================

@pytest.fixture(scope="function")
def registry(db_session, test_settings):
    return ClientRegistry(db_session, test_settings, cache=NullClientCache())


@pytest.fixture(scope="function")
def acme_client(registry):
    """Confidential client ``acme`` allowed to request profile and email."""
    record, secret = registry.register(
        name="Acme",
        redirect_uris=[ACME_REDIRECT_URI],
        scopes=["profile", "email"],
        is_confidential=True,
        client_id="acme",
    )
    return record, secret


@pytest.fixture(scope="function")
def public_client(registry):
    """Public client registered with a wildcard redirect pattern."""
    record, _ = registry.register(
        name="Peeap School Portal",
        redirect_uris=["https://*.gov.school.edu.sl/peeap/callback"],
        scopes=["profile", "school:read"],
        is_confidential=False,
        client_id="peeap-school",
    )
    return record


@pytest.fixture(scope="function")
def pkce_pair():
    verifier = PKCEHandler.generate_code_verifier(64)
    return verifier, PKCEHandler.generate_code_challenge(verifier)


# ==================== API CLIENT FIXTURES ====================

@pytest.fixture(scope="function")
def client(override_get_db, db_session, test_settings, webhook_dispatcher):
    """Create a test client with the test database, settings and webhook dispatcher."""
    from fastapi import FastAPI
    from federation.main import register_exception_handlers
    from federation.middleware import SecurityHeadersMiddleware

    test_app = FastAPI(
        title=test_settings.app_name,
        version=test_settings.app_version,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    test_app.add_middleware(SecurityHeadersMiddleware)
    register_exception_handlers(test_app)

    # Include routers (same as main app)
    from federation.routers import include_routers

    include_routers(test_app)

    # Override dependencies
    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: test_settings
    test_app.dependency_overrides[get_webhook_dispatcher] = lambda: webhook_dispatcher

    with TestClient(test_app) as test_client:
        yield test_client


@pytest.fixture(scope="function")
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture(scope="function")
def service_headers():
    return {"X-Service-Key": SERVICE_KEY}
