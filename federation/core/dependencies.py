"""
Dependencies for FastAPI dependency injection.

Components are built per request around the request's database session and
the injected Settings, so tests can override ``get_settings``, ``get_db`` or
``get_webhook_dispatcher`` on the app.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from federation.core.cache import build_client_cache
from federation.core.clients import ClientRegistry
from federation.core.config import Settings, get_settings
from federation.core.database import get_db
from federation.core.events import EventLogger, WebhookDispatcher
from federation.core.oauth import AuthorizationServer
from federation.core.sso import SSORelay

_dispatcher: Optional[WebhookDispatcher] = None


def get_webhook_dispatcher() -> WebhookDispatcher:
    """Process-wide webhook dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher(settings=get_settings())
    return _dispatcher


def shutdown_webhook_dispatcher():
    global _dispatcher
    if _dispatcher is not None:
        _dispatcher.shutdown(wait=False)
        _dispatcher = None


def get_event_logger(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> EventLogger:
    return EventLogger(db, settings, dispatcher=dispatcher)


def get_client_registry(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    events: EventLogger = Depends(get_event_logger),
) -> ClientRegistry:
    return ClientRegistry(db, settings, cache=build_client_cache(settings), events=events)


def get_authorization_server(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    registry: ClientRegistry = Depends(get_client_registry),
    events: EventLogger = Depends(get_event_logger),
) -> AuthorizationServer:
    return AuthorizationServer(db, settings, registry=registry, events=events)


def get_sso_relay(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> SSORelay:
    return SSORelay(db, settings)


def get_current_user_id(request: Request, settings: Settings = Depends(get_settings)) -> Optional[str]:
    """The end user authenticated by the upstream gateway, if any."""
    user_id = request.headers.get(settings.authenticated_user_header)
    if user_id is None:
        return None
    user_id = user_id.strip()
    return user_id or None


def _key_matches(provided: Optional[str], expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Require the administrative API key."""
    if not _key_matches(x_admin_key, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin key"
        )
    return True


def require_sso_service(
    x_service_key: Optional[str] = Header(None, alias="X-Service-Key"),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Require the key first-party apps use to request SSO handoffs."""
    if not _key_matches(x_service_key, settings.sso_service_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing service key"
        )
    return True
