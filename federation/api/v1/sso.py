"""
Internal SSO relay endpoints for first-party apps.
"""

import logging

from fastapi import APIRouter, Depends

from federation.core.dependencies import get_event_logger, get_sso_relay, require_sso_service
from federation.core.errors import OAuth2Error
from federation.core.events import EventLogger, EventType
from federation.core.sso import SSORelay
from federation.schemas.sso import SSOExchangeRequest, SSOExchangeResponse, SSOIssueRequest, SSOIssueResponse

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/issue", response_model=SSOIssueResponse, dependencies=[Depends(require_sso_service)])
async def issue_sso_token(
    body: SSOIssueRequest,
    relay: SSORelay = Depends(get_sso_relay),
    events: EventLogger = Depends(get_event_logger),
):
    """Issue a one-time handoff token for a signed-in user moving between first-party apps."""
    try:
        issued = relay.issue(
            user_id=body.user_id,
            source_app=body.source_app,
            target_app=body.target_app,
            redirect_path=body.redirect_path,
            scope=body.scope,
        )
    except OAuth2Error as e:
        events.record(
            EventType.SSO_TOKEN_FAILED, user_id=body.user_id,
            data={"error": e.error, "source_app": body.source_app, "target_app": body.target_app, "stage": "issue"},
            success=False,
        )
        raise

    events.record(
        EventType.SSO_TOKEN_ISSUED, user_id=body.user_id,
        data={"source_app": body.source_app, "target_app": body.target_app},
    )
    return SSOIssueResponse(token=issued.token, expires_at=issued.expires_at, redirect_url=issued.redirect_url)


@router.post("/exchange", response_model=SSOExchangeResponse)
async def exchange_sso_token(
    body: SSOExchangeRequest,
    relay: SSORelay = Depends(get_sso_relay),
    events: EventLogger = Depends(get_event_logger),
):
    """Redeem a handoff token on the target app. Each token works once."""
    try:
        result = relay.exchange(body.token, target_app=body.target_app)
    except OAuth2Error as e:
        events.record(
            EventType.SSO_TOKEN_FAILED,
            data={"error": e.error, "reason": e.error_description, "target_app": body.target_app, "stage": "exchange"},
            success=False,
        )
        raise

    events.record(
        EventType.SSO_TOKEN_EXCHANGED, user_id=result.user_id,
        data={"source_app": result.source_app, "target_app": result.target_app},
    )
    return SSOExchangeResponse(
        user_id=result.user_id,
        source_app=result.source_app,
        target_app=result.target_app,
        redirect_path=result.redirect_path,
        scope=str(result.scope),
    )
