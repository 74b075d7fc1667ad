"""OAuth 2.0 endpoints: client registration, authorize, token and discovery.

Handlers read the shared ``AuthorizationFlow``, ``ServerConfig`` and
``AuditLogger`` from ``request.app.state``.
"""

import base64
import binascii
import html
import json
import logging
from string import Template
from typing import Any

from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from postgres_mcp.config import ServerConfig
from postgres_mcp.exceptions import (
    InvalidRequestError,
    OAuthError,
    RateLimitedError,
    UnauthorizedError,
)
from postgres_mcp.utils.audit import AuditAction, AuditLogger, AuditResult
from postgres_mcp.utils.auth_codes import SUPPORTED_CHALLENGE_METHODS
from postgres_mcp.utils.oauth_flow import (
    SUPPORTED_GRANT_TYPES,
    AuthorizationFlow,
    AuthorizationGrant,
    AuthorizationRequest,
)

logger = logging.getLogger("postgres-mcp.server.oauth.dcr")

AUTHORIZE_FIELDS = (
    "redirect_uri",
    "state",
    "client_id",
    "code_challenge",
    "code_challenge_method",
)

LOGIN_PAGE = Template("""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>PostgreSQL MCP - Authorization</title>
  <style>
    body { font-family: Arial, sans-serif; display: flex; justify-content: center;
           align-items: center; height: 100vh; margin: 0; background: #252525; color: #fff; }
    .container { background: #1e1e1e; padding: 2.5rem; border-radius: 8px; width: 340px;
                 box-shadow: 0 4px 24px rgba(0,0,0,0.4); border-top: 3px solid #B3E6E1; }
    h1 { margin: 0 0 0.5rem 0; font-size: 1.6rem; text-align: center; }
    p { margin: 0 0 1.5rem 0; color: #999; font-size: 0.9rem; text-align: center; }
    label { font-size: 0.7rem; color: #888; display: block; margin-bottom: 0.4rem;
            text-transform: uppercase; letter-spacing: 0.075em; }
    input[type="password"] { width: 100%; padding: 0.75rem; margin-bottom: 1.25rem;
            border: 1px solid #3a3a3a; border-radius: 4px; background: #252525;
            color: #fff; box-sizing: border-box; }
    button { width: 100%; padding: 0.75rem; border: none; border-radius: 4px;
             cursor: pointer; font-weight: 700; background: #B3E6E1; color: #252525; }
    .error { color: #F5602B; margin-bottom: 1rem; font-size: 0.85rem; text-align: center; }
  </style>
</head>
<body>
  <div class="container">
    <h1>PostgreSQL MCP</h1>
    <p>Enter password to continue</p>
    $error_block
    <form method="POST">
      <input type="hidden" name="redirect_uri" value="$redirect_uri" />
      <input type="hidden" name="state" value="$state" />
      <input type="hidden" name="client_id" value="$client_id" />
      <input type="hidden" name="code_challenge" value="$code_challenge" />
      <input type="hidden" name="code_challenge_method" value="$code_challenge_method" />
      <label for="password">Password</label>
      <input type="password" id="password" name="password" placeholder="Enter passphrase" autofocus required />
      <button type="submit">Authorize</button>
    </form>
  </div>
</body>
</html>
""")


def _error_response(error: OAuthError) -> JSONResponse:
    """Create an RFC 6749 style error response.

    Args:
        error: The OAuth error to report

    Returns:
        JSONResponse with error details
    """
    response = JSONResponse(error.to_dict(), status_code=error.status_code)
    if isinstance(error, RateLimitedError):
        response.headers["Retry-After"] = str(error.retry_after)
    return response


def _flow(request: Request) -> AuthorizationFlow:
    return request.app.state.oauth_flow


def _config(request: Request) -> ServerConfig:
    return request.app.state.config


def _audit(request: Request) -> AuditLogger:
    return request.app.state.audit


def client_ip(request: Request, trust_proxy: bool = False) -> str:
    """Caller address used for rate limiting and audit entries."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _optional(value: Any) -> str | None:
    """Form and query values as plain strings, with empty meaning absent."""
    if isinstance(value, str) and value:
        return value
    return None


def _authorization_request(params: Any) -> AuthorizationRequest:
    values = {name: _optional(params.get(name)) for name in AUTHORIZE_FIELDS}
    # state is echoed verbatim, so an empty value still comes back as state=
    state = params.get("state")
    values["state"] = state if isinstance(state, str) else None
    return AuthorizationRequest(**values)


def render_login_page(
    auth_request: AuthorizationRequest, error: str | None = None, status_code: int = 200
) -> HTMLResponse:
    """Render the password form with the authorize parameters as hidden fields."""
    values = {
        name: html.escape(getattr(auth_request, name) or "", quote=True)
        for name in AUTHORIZE_FIELDS
    }
    error_block = f'<div class="error">{html.escape(error)}</div>' if error else ""
    page = LOGIN_PAGE.substitute(error_block=error_block, **values)
    return HTMLResponse(page, status_code=status_code)


def _redirect(grant: AuthorizationGrant) -> RedirectResponse:
    return RedirectResponse(grant.redirect_url, status_code=302)


async def register_client(request: Request) -> JSONResponse:
    """Handle OAuth 2.0 Dynamic Client Registration (RFC 7591).

    POST /oauth/register (also POST /register)

    Request body:
        {
            "redirect_uris": ["https://example.com/callback"],
            "client_name": "My Client"
        }

    Returns:
        201 with the registration response, or 400 invalid_client_metadata
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error_response(InvalidRequestError("Invalid JSON in request body"))

    if not isinstance(body, dict):
        return _error_response(InvalidRequestError("Request body must be a JSON object"))

    client_name = body.get("client_name")
    try:
        client = _flow(request).clients.register_client(
            body.get("redirect_uris"),
            client_name=client_name if isinstance(client_name, str) else None,
        )
    except OAuthError as e:
        logger.warning(f"Client registration rejected: {e.error_description}")
        return _error_response(e)

    _audit(request).log(
        AuditAction.CLIENT_REGISTERED,
        user_ip=client_ip(request, _config(request).trust_proxy),
        client_id=client.client_id,
        metadata={"client_name": client.client_name},
    )
    return JSONResponse(client.to_registration_response(), status_code=201)


async def authorize(request: Request) -> Response:
    """OAuth 2.0 authorization endpoint.

    GET /oauth/authorize redirects straight back with a code when no
    password is configured, otherwise renders the password form.
    POST /oauth/authorize checks the submitted password.
    """
    flow = _flow(request)

    if request.method == "GET":
        auth_request = _authorization_request(request.query_params)
        try:
            grant = flow.begin_authorize(auth_request)
        except OAuthError as e:
            return _error_response(e)
        if grant is None:
            return render_login_page(auth_request)
        return _redirect(grant)

    form = await request.form()
    auth_request = _authorization_request(form)

    if not flow.password_required:
        try:
            grant = flow.begin_authorize(auth_request)
        except OAuthError as e:
            return _error_response(e)
        return _redirect(grant)

    try:
        flow.validate_request(auth_request)
    except OAuthError as e:
        return _error_response(e)

    audit = _audit(request)
    caller = client_ip(request, _config(request).trust_proxy)
    try:
        grant = flow.submit_password(auth_request, _optional(form.get("password")), caller)
    except RateLimitedError as e:
        audit.log(
            AuditAction.RATE_LIMITED,
            AuditResult.DENIED,
            user_ip=caller,
            client_id=auth_request.client_id,
            metadata={"retry_after": e.retry_after},
        )
        response = render_login_page(auth_request, e.error_description, status_code=429)
        response.headers["Retry-After"] = str(e.retry_after)
        return response
    except UnauthorizedError as e:
        audit.log(
            AuditAction.AUTHENTICATION_FAILURE,
            AuditResult.FAILURE,
            user_ip=caller,
            client_id=auth_request.client_id,
            error_message=e.error_description,
        )
        return render_login_page(auth_request, "Invalid password", status_code=401)

    audit.log(
        AuditAction.AUTHENTICATION_SUCCESS,
        user_ip=caller,
        client_id=auth_request.client_id,
    )
    return _redirect(grant)


def _basic_credentials(authorization: str) -> tuple[str, str] | None:
    """Decode ``Authorization: Basic base64(client_id:client_secret)``."""
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        logger.debug(f"Failed to parse Authorization header: {e}")
        return None
    if ":" not in decoded:
        return None
    client_id, client_secret = decoded.split(":", 1)
    return client_id, client_secret


async def _token_request_body(request: Request) -> dict[str, Any]:
    # OAuth 2.0 token requests typically use application/x-www-form-urlencoded
    # but we also support JSON for convenience
    content_type = request.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidRequestError("Invalid JSON in request body") from None
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        return body
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


async def token(request: Request) -> JSONResponse:
    """Handle OAuth 2.0 token exchange.

    POST /oauth/token

    Request body (form or JSON):
        {
            "grant_type": "authorization_code",
            "code": "...",
            "redirect_uri": "...",
            "client_id": "...",
            "code_verifier": "..."
        }

    Or for machine clients:
        {
            "grant_type": "client_credentials",
            "client_id": "...",
            "client_secret": "..."
        }

    Client credentials may also be sent with HTTP Basic authentication.

    Returns:
        Token response with access_token, token_type and expires_in
    """
    try:
        body = await _token_request_body(request)
    except OAuthError as e:
        return _error_response(e)

    grant_type = _optional(body.get("grant_type"))
    client_id = _optional(body.get("client_id"))
    client_secret = _optional(body.get("client_secret"))

    basic = _basic_credentials(request.headers.get("authorization", ""))
    if basic:
        client_id = client_id or basic[0] or None
        client_secret = client_secret or basic[1] or None

    audit = _audit(request)
    caller = client_ip(request, _config(request).trust_proxy)
    try:
        access_token = _flow(request).exchange_token(
            grant_type,
            code=_optional(body.get("code")),
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=_optional(body.get("redirect_uri")),
            code_verifier=_optional(body.get("code_verifier")),
        )
    except OAuthError as e:
        logger.info(f"Token request rejected ({grant_type}): {e.error}")
        audit.log(
            AuditAction.TOKEN_ISSUED,
            AuditResult.FAILURE,
            user_ip=caller,
            client_id=client_id,
            error_message=e.error,
            metadata={"grant_type": grant_type},
        )
        return _error_response(e)

    audit.log(
        AuditAction.TOKEN_ISSUED,
        user_ip=caller,
        client_id=access_token.client_id,
        metadata={"grant_type": grant_type},
    )
    response = JSONResponse(access_token.to_response())
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    return response


async def oauth_metadata(request: Request) -> JSONResponse:
    """OAuth 2.0 Authorization Server Metadata endpoint (RFC 8414)."""
    base_url = _config(request).base_url
    return JSONResponse(
        {
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/oauth/authorize",
            "token_endpoint": f"{base_url}/oauth/token",
            "registration_endpoint": f"{base_url}/oauth/register",
            "response_types_supported": ["code"],
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "code_challenge_methods_supported": list(SUPPORTED_CHALLENGE_METHODS),
            "token_endpoint_auth_methods_supported": [
                "none",
                "client_secret_post",
                "client_secret_basic",
            ],
        }
    )


async def protected_resource_metadata(request: Request) -> JSONResponse:
    """OAuth 2.0 Protected Resource Metadata endpoint (RFC 9728)."""
    base_url = _config(request).base_url
    return JSONResponse(
        {
            "resource": base_url,
            "authorization_servers": [base_url],
            "bearer_methods_supported": ["header"],
        }
    )
