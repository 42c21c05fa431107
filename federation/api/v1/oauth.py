"""
OAuth 2.0 endpoints: authorization, consent, token, revocation and introspection.
"""

import base64
import logging
from typing import Optional, Tuple
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from federation.core.dependencies import get_authorization_server, get_current_user_id
from federation.core.errors import InvalidClient, OAuth2Error
from federation.core.oauth import AuthorizationRequest, AuthorizationServer
from federation.schemas.oauth import ConsentDecisionResponse, IntrospectionResponse, TokenResponse

router = APIRouter()
logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def parse_basic_auth(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """Extract client credentials from an HTTP Basic Authorization header (client_secret_basic)."""
    header = request.headers.get("Authorization")
    if not header or not header.lower().startswith("basic "):
        return None, None
    try:
        decoded = base64.b64decode(header[6:].strip()).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        raise InvalidClient("Malformed Basic authorization header")
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise InvalidClient("Malformed Basic authorization header")
    return unquote(client_id), unquote(client_secret)


def resolve_client_credentials(
    request: Request,
    client_id: Optional[str],
    client_secret: Optional[str],
) -> Tuple[Optional[str], Optional[str]]:
    basic_id, basic_secret = parse_basic_auth(request)
    if basic_id is not None:
        if client_id and client_id != basic_id:
            raise InvalidClient("client_id does not match the Authorization header")
        return basic_id, basic_secret
    return client_id, client_secret


@router.get("/authorize", response_class=RedirectResponse)
async def authorize(
    request: Request,
    response_type: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    code_challenge: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    user_id: Optional[str] = Depends(get_current_user_id),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """
    OAuth 2.0 Authorization endpoint.

    Unknown clients and unregistered redirect URIs are answered with a 400
    JSON error; every other outcome is a redirect.
    """
    auth_request = AuthorizationRequest(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        scope=scope,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )
    try:
        result = server.begin_authorization(auth_request, user_id, return_to=str(request.url))
    except OAuth2Error as e:
        logger.warning(f"Untrusted authorization request: {e.error} - {e.error_description}")
        return JSONResponse(status_code=400, content=e.to_dict(), headers=NO_STORE_HEADERS)

    return RedirectResponse(url=result.redirect_url, status_code=302, headers=NO_STORE_HEADERS)


@router.post("/authorize/consent", response_model=ConsentDecisionResponse)
async def submit_consent(
    request_token: str = Form(...),
    approve: bool = Form(True),
    user_id: Optional[str] = Depends(get_current_user_id),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Record the user's consent decision and return the client redirect."""
    result = server.approve_consent(request_token, user_id, approve=approve)
    return ConsentDecisionResponse(redirect_uri=result.redirect_url)


@router.post("/token", response_model=TokenResponse, response_model_exclude_none=True)
async def token(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """
    OAuth 2.0 Token endpoint.

    Supports the authorization_code and refresh_token grants. Clients
    authenticate with client_secret_basic or client_secret_post; public
    clients send only their client_id.
    """
    client_id, client_secret = resolve_client_credentials(request, client_id, client_secret)
    issued = server.token(
        grant_type,
        client_id=client_id,
        client_secret=client_secret,
        code=code,
        redirect_uri=redirect_uri,
        code_verifier=code_verifier,
        refresh_token=refresh_token,
        scope=scope,
    )
    return JSONResponse(content=issued.to_response(), headers=NO_STORE_HEADERS)


@router.post("/revoke")
async def revoke(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """
    OAuth 2.0 Token Revocation (RFC 7009).

    Responds 200 whether or not the token was known.
    """
    client_id, client_secret = resolve_client_credentials(request, client_id, client_secret)
    server.revoke(token, client_id=client_id, client_secret=client_secret)
    return JSONResponse(content={}, headers=NO_STORE_HEADERS)


@router.post("/introspect", response_model=IntrospectionResponse, response_model_exclude_none=True)
async def introspect(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """OAuth 2.0 Token Introspection (RFC 7662) for authenticated clients."""
    client_id, client_secret = resolve_client_credentials(request, client_id, client_secret)
    result = server.introspect(token, client_id, client_secret)
    return JSONResponse(content=result, headers=NO_STORE_HEADERS)
