# receipt_scanner/auth.py
from __future__ import annotations

import time
from functools import lru_cache
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlencode

from authlib.integrations.starlette_client import OAuth, OAuthError
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import RedirectResponse
from jose import JWTError, jwt

from receipt_scanner.config import Settings, get_settings
from receipt_scanner.logging_utils import get_logger

log = get_logger(__name__)

JWT_ALGORITHM = "HS256"
GOOGLE_METADATA_URL = "https://accounts.google.com/.well-known/openid-configuration"

# Sign-in plus what Drive archiving and the Sheets log need.
GOOGLE_SCOPES = " ".join([
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/spreadsheets",
])

router = APIRouter()


# ----------------------------
# ALLOW-LIST
# ----------------------------

def _norm_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_email_allowed(email: Optional[str], allowed: Iterable[str]) -> bool:
    """Exact, case-insensitive match. No allow-list means nobody gets in."""
    e = _norm_email(email)
    if not e:
        return False
    return e in {_norm_email(a) for a in allowed if _norm_email(a)}


# ----------------------------
# APP TOKEN (JWT)
# ----------------------------

def create_access_token(claims: Dict[str, Any], settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    now = int(time.time())
    body = dict(claims)
    body["iat"] = now
    body["exp"] = now + settings.access_token_ttl_seconds
    return jwt.encode(body, settings.access_token_secret, algorithm=JWT_ALGORITHM)


def verify_access_token(token: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    try:
        return jwt.decode(token, settings.access_token_secret, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


# ----------------------------
# AUTH DEPENDENCIES
# ----------------------------

def get_current_user(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header")

    body = verify_access_token(parts[1].strip(), settings)
    if not is_email_allowed(body.get("email"), settings.allowed_emails):
        raise HTTPException(status_code=403, detail="This account is not authorized to use the app")
    return body


def google_token_valid(ctx: Dict[str, Any], now: Optional[int] = None) -> bool:
    token = ctx.get("google_token")
    exp = int(ctx.get("google_token_exp") or 0)
    return bool(token) and (now or int(time.time())) < exp


def require_google_token(ctx: Dict[str, Any] = Depends(get_current_user)) -> str:
    if not google_token_valid(ctx):
        raise HTTPException(status_code=401, detail="Google session expired. Please sign in again.")
    return ctx["google_token"]


# ----------------------------
# GOOGLE OAUTH
# ----------------------------

@lru_cache(maxsize=2)
def _oauth_for(client_id: str, client_secret: str) -> OAuth:
    oauth = OAuth()
    oauth.register(
        name="google",
        server_metadata_url=GOOGLE_METADATA_URL,
        client_id=client_id,
        client_secret=client_secret,
        client_kwargs={"scope": GOOGLE_SCOPES},
    )
    return oauth


def get_oauth(settings: Settings) -> OAuth:
    if not settings.google_configured:
        raise HTTPException(status_code=503, detail="Google sign-in is not configured")
    return _oauth_for(settings.google_client_id, settings.google_client_secret)


def _ui_redirect(settings: Settings, **params: str) -> RedirectResponse:
    base = settings.ui_base_url.rstrip("/")
    return RedirectResponse(url=f"{base}/?{urlencode(params)}", status_code=302)


@router.get("/auth/login")
async def auth_login(request: Request, settings: Settings = Depends(get_settings)):
    oauth = get_oauth(settings)
    redirect_uri = str(request.url_for("auth_callback"))
    return await oauth.google.authorize_redirect(request, redirect_uri, prompt="select_account")


@router.get("/auth/callback", name="auth_callback")
async def auth_callback(request: Request, settings: Settings = Depends(get_settings)):
    oauth = get_oauth(settings)
    try:
        token = await oauth.google.authorize_access_token(request)
    except OAuthError as e:
        log.warning("Google sign-in failed: %s", e.error)
        return _ui_redirect(settings, error="login_failed")

    userinfo = token.get("userinfo") or {}
    email = _norm_email(userinfo.get("email"))
    if not is_email_allowed(email, settings.allowed_emails):
        log.warning("Rejected sign-in for %s (not on allow-list)", email or "<no email>")
        return _ui_redirect(settings, error="not_authorized")

    expires_in = int(token.get("expires_in") or 3600)
    app_token = create_access_token(
        {
            "email": email,
            "name": userinfo.get("name"),
            "google_token": token.get("access_token"),
            "google_token_exp": int(time.time()) + expires_in,
        },
        settings,
    )
    log.info("Signed in %s", email)
    return _ui_redirect(settings, token=app_token)


@router.get("/me")
def me(ctx: Dict[str, Any] = Depends(get_current_user)):
    return {
        "email": ctx.get("email"),
        "name": ctx.get("name"),
        "authorized": True,
        "google_connected": google_token_valid(ctx),
    }
