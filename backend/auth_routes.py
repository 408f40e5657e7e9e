"""
/auth/* routes. Identity lives in Supabase; these are thin adapters that keep
the `username` / `notification_email` user metadata the frontend relies on.
"""

import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from errors import EmailNotConfirmedError, NotAuthenticatedError, ValidationError
from notifier import mask_identifier
from schemas import EmailRequest, LoginRequest, RegisterRequest, UsernameRequest
from supabase_auth import SupabaseAuth, bearer_token

logger = logging.getLogger("cryptocards.auth")

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_\-]{3,20}$")
SYNTHETIC_EMAIL_DOMAIN = "cryptocards.local"

router = APIRouter(prefix="/auth", tags=["auth"])


def get_auth(request: Request) -> SupabaseAuth:
    return request.app.state.auth


def optional_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Optional[Dict[str, Any]]:
    """The caller's user when a valid bearer token is sent; None for guests."""
    token = bearer_token(authorization)
    auth = get_auth(request)
    if not token or not auth.configured:
        return None
    return auth.get_user(token)


def require_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    return get_auth(request).require_user(bearer_token(authorization))


def user_view(user: Dict[str, Any]) -> Dict[str, Any]:
    meta = user.get("user_metadata") or {}
    return {
        "id": user.get("id"),
        "username": meta.get("username") or user.get("email"),
        "email": meta.get("notification_email") or user.get("email"),
    }


def _clean_username(value: str) -> str:
    username = (value or "").strip()
    if not USERNAME_RE.match(username):
        raise ValidationError(
            "Username must be 3-20 characters and contain only letters, numbers, underscores, or dashes."
        )
    return username


def _clean_email(value: str) -> str:
    email = (value or "").strip()
    if "@" not in email:
        raise ValidationError("Valid email is required")
    return email


def _find_by_username(auth: SupabaseAuth, username: str) -> Optional[Dict[str, Any]]:
    wanted = username.lower()
    for user in auth.list_users():
        meta = user.get("user_metadata") or {}
        existing = meta.get("username") or (user.get("email") or "").split("@")[0]
        if existing and existing.lower() == wanted:
            return user
    return None


def _frontend_redirect(request: Request, path: str = "/") -> Optional[str]:
    base = (request.app.state.settings.frontend_url or "").rstrip("/")
    return f"{base}{path}" if base else None


@router.post("/register")
def register(body: RegisterRequest, request: Request, auth: SupabaseAuth = Depends(get_auth)):
    username = _clean_username(body.username)
    if not body.password:
        raise ValidationError("username and password are required")
    if _find_by_username(auth, username):
        raise ValidationError("Username is already taken. Please choose a different one.")

    email = (body.email or "").strip() or None
    if email and "@" in email:
        created = auth.sign_up(
            email,
            body.password,
            {"username": username, "notification_email": email},
            redirect_to=_frontend_redirect(request),
        )
    else:
        email = None
        created = auth.create_user(
            f"{username}+noemail@{SYNTHETIC_EMAIL_DOMAIN}",
            body.password,
            {"username": username, "notification_email": None},
        )
    user = created.get("user") if "user" in created else created
    logger.info("user_registered username=%s with_email=%s", username, bool(email))
    request.app.state.notifier.notify(
        f"*New user registered*\n\nUsername: `{username}`\nEmail: `{mask_identifier(email) or 'N/A'}`"
    )
    return {
        "success": True,
        "user": {"id": user.get("id"), "username": username, "email": email} if user else None,
    }


@router.post("/login")
def login(body: LoginRequest, auth: SupabaseAuth = Depends(get_auth)):
    matched = _find_by_username(auth, (body.username or "").strip())
    if not matched or not matched.get("email"):
        raise NotAuthenticatedError("Invalid credentials")
    try:
        session = auth.sign_in(matched["email"], body.password)
    except NotAuthenticatedError as exc:
        lowered = exc.message.lower()
        if "confirm" in lowered and "email" in lowered:
            raise EmailNotConfirmedError() from exc
        raise
    user = session.get("user") or matched
    if not session.get("access_token"):
        raise NotAuthenticatedError("Invalid credentials")
    return {
        "success": True,
        "token": session["access_token"],
        "refreshToken": session.get("refresh_token"),
        "user": user_view(user),
    }


@router.get("/me")
def me(user: Dict[str, Any] = Depends(require_user)):
    return {"success": True, "user": user_view(user)}


@router.post("/update-email")
def update_email(
    body: EmailRequest,
    user: Dict[str, Any] = Depends(require_user),
    auth: SupabaseAuth = Depends(get_auth),
):
    """Sync the notification email kept in user metadata."""
    email = _clean_email(body.email)
    meta = dict(user.get("user_metadata") or {})
    meta["notification_email"] = email
    updated = auth.update_user_metadata(user["id"], meta)
    return {"success": True, "user": user_view(updated.get("user") or updated)}


@router.post("/update-username")
def update_username(
    body: UsernameRequest,
    user: Dict[str, Any] = Depends(require_user),
    auth: SupabaseAuth = Depends(get_auth),
):
    username = _clean_username(body.username)
    existing = _find_by_username(auth, username)
    if existing and existing.get("id") != user.get("id"):
        raise ValidationError("Username is already taken. Please choose a different one.")
    meta = dict(user.get("user_metadata") or {})
    meta["username"] = username
    updated = auth.update_user_metadata(user["id"], meta)
    logger.info("username_updated user_id=%s", user.get("id"))
    return {"success": True, "user": user_view(updated.get("user") or updated)}


@router.post("/email-change-request")
def email_change_request(
    body: EmailRequest,
    request: Request,
    authorization: Optional[str] = Header(default=None),
    auth: SupabaseAuth = Depends(get_auth),
):
    """Start Supabase's secure email change; the user confirms from their inbox."""
    token = bearer_token(authorization)
    if not token:
        raise NotAuthenticatedError()
    email = _clean_email(body.email)
    auth.request_email_change(token, email, redirect_to=_frontend_redirect(request, "/?type=email_change"))
    return {"success": True, "pending_email": email}


@router.post("/email-change-complete")
def email_change_complete(
    user: Dict[str, Any] = Depends(require_user),
    auth: SupabaseAuth = Depends(get_auth),
):
    """After confirmation the account email is authoritative; copy it into metadata."""
    confirmed = user.get("email")
    if not confirmed:
        raise ValidationError("User has no confirmed email")
    meta = dict(user.get("user_metadata") or {})
    meta["notification_email"] = confirmed
    updated = auth.update_user_metadata(user["id"], meta)
    return {"success": True, "user": user_view(updated.get("user") or updated)}


@router.post("/forgot-password")
def forgot_password(body: EmailRequest, request: Request, auth: SupabaseAuth = Depends(get_auth)):
    email = _clean_email(body.email)
    try:
        auth.send_password_reset(email, redirect_to=_frontend_redirect(request, "/reset-password"))
    except ValidationError:
        # unknown addresses get the same answer as known ones
        logger.info("password_reset_rejected email=%s", mask_identifier(email))
    return {"success": True}
