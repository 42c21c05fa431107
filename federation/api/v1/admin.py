"""
Administrative API endpoints for clients, webhooks, consents and maintenance.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from federation.core.clients import ClientRecord, ClientRegistry
from federation.core.config import Settings, get_settings
from federation.core.consent import ConsentStore
from federation.core.database import get_db
from federation.core.dependencies import get_client_registry, require_admin
from federation.core.events import generate_webhook_secret
from federation.core.reaper import ExpiryReaper
from federation.core.tokens import TokenManager
from federation.models.webhook import WebhookEndpoint
from federation.schemas.admin import (
    ClientCreateRequest,
    ClientListResponse,
    ClientRegistrationResponse,
    ClientResponse,
    ClientUpdateRequest,
    ReapResponse,
    SecretRotationResponse,
    WebhookCreatedResponse,
    WebhookCreateRequest,
    WebhookResponse,
)
from federation.schemas.base import MessageSchema

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


def _client_response(record: ClientRecord) -> ClientResponse:
    return ClientResponse(
        client_id=record.client_id,
        name=record.name,
        redirect_uris=record.redirect_uris,
        scopes=record.scopes,
        is_confidential=record.is_confidential,
        is_active=record.is_active,
    )


def _webhook_response(endpoint: WebhookEndpoint, model=WebhookResponse, **extra):
    return model(
        id=endpoint.id,
        client_id=endpoint.client_id,
        url=endpoint.url,
        events=endpoint.get_events(),
        is_active=endpoint.is_active,
        failure_count=endpoint.failure_count or 0,
        last_status=endpoint.last_status,
        last_triggered_at=endpoint.last_triggered_at,
        **extra,
    )


def _client_not_found():
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Client not found"
    )


# ==================== CLIENTS ====================

@router.post("/clients", response_model=ClientRegistrationResponse, status_code=201)
async def register_client(
    body: ClientCreateRequest,
    registry: ClientRegistry = Depends(get_client_registry),
):
    """Register a client. The secret is returned only in this response."""
    record, plain_secret = registry.register(
        name=body.name,
        redirect_uris=body.redirect_uris,
        scopes=body.scopes,
        is_confidential=body.is_confidential,
        client_id=body.client_id,
    )
    return ClientRegistrationResponse(**_client_response(record).model_dump(), client_secret=plain_secret)


@router.get("/clients", response_model=ClientListResponse)
async def list_clients(
    include_inactive: bool = False,
    registry: ClientRegistry = Depends(get_client_registry),
):
    return ClientListResponse(clients=[_client_response(r) for r in registry.list_clients(include_inactive)])


@router.get("/clients/{client_id}", response_model=ClientResponse)
async def get_client(client_id: str, registry: ClientRegistry = Depends(get_client_registry)):
    record = registry.get(client_id)
    if record is None:
        raise _client_not_found()
    return _client_response(record)


@router.put("/clients/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: str,
    body: ClientUpdateRequest,
    registry: ClientRegistry = Depends(get_client_registry),
):
    record = registry.update(
        client_id,
        name=body.name,
        redirect_uris=body.redirect_uris,
        scopes=body.scopes,
        is_active=body.is_active,
    )
    if record is None:
        raise _client_not_found()
    return _client_response(record)


@router.delete("/clients/{client_id}", response_model=MessageSchema)
async def deactivate_client(client_id: str, registry: ClientRegistry = Depends(get_client_registry)):
    """Deactivate a client. Clients are never deleted so their history stays auditable."""
    if not registry.deactivate(client_id):
        raise _client_not_found()
    return MessageSchema(message="Client successfully deactivated")


@router.post("/clients/{client_id}/rotate-secret", response_model=SecretRotationResponse)
async def rotate_client_secret(client_id: str, registry: ClientRegistry = Depends(get_client_registry)):
    """Generate a new client secret. The old secret stops working immediately."""
    rotated = registry.rotate_secret(client_id)
    if rotated is None:
        raise _client_not_found()
    plain_secret, rotated_at = rotated
    return SecretRotationResponse(client_id=client_id, client_secret=plain_secret, secret_last_rotated=rotated_at)


# ==================== WEBHOOKS ====================

def _create_webhook(db: Session, client_id: Optional[str], body: WebhookCreateRequest) -> WebhookCreatedResponse:
    secret = generate_webhook_secret()
    endpoint = WebhookEndpoint(client_id=client_id, url=body.url, secret=secret, is_active=True)
    endpoint.set_events(body.events)
    db.add(endpoint)
    db.commit()
    db.refresh(endpoint)
    logger.info(f"Registered webhook {endpoint.id} for {client_id or 'all clients'}: {body.url}")
    return _webhook_response(endpoint, WebhookCreatedResponse, secret=secret)


@router.post("/clients/{client_id}/webhooks", response_model=WebhookCreatedResponse, status_code=201)
async def create_client_webhook(
    client_id: str,
    body: WebhookCreateRequest,
    registry: ClientRegistry = Depends(get_client_registry),
    db: Session = Depends(get_db),
):
    if registry.get(client_id) is None:
        raise _client_not_found()
    return _create_webhook(db, client_id, body)


@router.get("/clients/{client_id}/webhooks", response_model=List[WebhookResponse])
async def list_client_webhooks(client_id: str, db: Session = Depends(get_db)):
    endpoints = db.query(WebhookEndpoint).filter(WebhookEndpoint.client_id == client_id).order_by(WebhookEndpoint.id).all()
    return [_webhook_response(endpoint) for endpoint in endpoints]


@router.post("/webhooks", response_model=WebhookCreatedResponse, status_code=201)
async def create_global_webhook(body: WebhookCreateRequest, db: Session = Depends(get_db)):
    """Register a webhook that receives events for every client."""
    return _create_webhook(db, None, body)


@router.delete("/webhooks/{webhook_id}", response_model=MessageSchema)
async def deactivate_webhook(webhook_id: int, db: Session = Depends(get_db)):
    endpoint = db.query(WebhookEndpoint).filter(WebhookEndpoint.id == webhook_id).first()
    if endpoint is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
    endpoint.is_active = False
    db.commit()
    return MessageSchema(message="Webhook deactivated")


# ==================== CONSENTS ====================

@router.delete("/consents/{user_id}/{client_id}", response_model=MessageSchema)
async def revoke_consent(
    user_id: str,
    client_id: str,
    scope: Optional[str] = None,
    revoke_tokens: bool = True,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Shrink or remove a user's consent for a client.

    Without ``scope`` the whole consent is removed. Live tokens are revoked
    unless ``revoke_tokens=false``.
    """
    if not ConsentStore(db, settings).revoke(user_id, client_id, scope):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Consent not found")
    revoked = TokenManager(db, settings).revoke_for_user_client(user_id, client_id) if revoke_tokens else 0
    return MessageSchema(message=f"Consent revoked; {revoked} token(s) revoked")


# ==================== MAINTENANCE ====================

@router.post("/maintenance/reap", response_model=ReapResponse)
async def reap_expired(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    """Run an expiry sweep now instead of waiting for the scheduled one."""
    return ReapResponse(deleted=ExpiryReaper(settings=settings).sweep(db))
