"""Supabase Auth (GoTrue) REST collaborator used for identity and user metadata."""

import logging
from typing import Any, Dict, List, Optional

import requests

from errors import NotAuthenticatedError, UpstreamError, ValidationError

logger = logging.getLogger("cryptocards.auth")


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    parts = (authorization or "").split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]


class SupabaseAuth:
    def __init__(self, supabase_url: str, service_key: str, timeout: float = 10.0):
        self.base_url = (supabase_url or "").rstrip("/") + "/auth/v1"
        self.service_key = service_key or ""
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.base_url.startswith("http") and self.service_key)

    def _headers(self, bearer: Optional[str] = None) -> Dict[str, str]:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {bearer or self.service_key}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        bearer: Optional[str] = None,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> requests.Response:
        if not self.configured:
            raise UpstreamError("Auth service is not configured")
        try:
            return requests.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(bearer),
                json=json,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("supabase_auth_request_failed path=%s error=%s", path, exc)
            raise UpstreamError("Auth service unavailable") from exc

    @staticmethod
    def _error_message(resp: requests.Response, default: str) -> str:
        try:
            body = resp.json()
        except ValueError:
            return default
        return body.get("msg") or body.get("error_description") or body.get("message") or default

    def _expect(self, resp: requests.Response, default: str) -> Dict[str, Any]:
        if resp.status_code >= 500:
            logger.error("supabase_auth_upstream_error status=%s body=%s", resp.status_code, resp.text[:500])
            raise UpstreamError("Auth service failure")
        if resp.status_code >= 400:
            raise ValidationError(self._error_message(resp, default))
        return resp.json() if resp.content else {}

    def get_user(self, access_token: str) -> Optional[Dict[str, Any]]:
        """Resolve a bearer token to a user; None for missing, expired or invalid tokens."""
        if not access_token:
            return None
        resp = self._request("GET", "/user", bearer=access_token)
        if resp.status_code in (401, 403):
            return None
        data = self._expect(resp, "Failed to resolve user")
        return data or None

    def require_user(self, access_token: Optional[str]) -> Dict[str, Any]:
        user = self.get_user(access_token or "")
        if not user:
            raise NotAuthenticatedError()
        return user

    def list_users(self, page: int = 1, per_page: int = 1000) -> List[Dict[str, Any]]:
        resp = self._request("GET", "/admin/users", params={"page": page, "per_page": per_page})
        return self._expect(resp, "Failed to list users").get("users") or []

    def update_user_metadata(self, user_id: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._request("PUT", f"/admin/users/{user_id}", json={"user_metadata": metadata})
        return self._expect(resp, "Failed to update user")

    def request_email_change(self, access_token: str, new_email: str, redirect_to: Optional[str] = None) -> Dict[str, Any]:
        params = {"redirect_to": redirect_to} if redirect_to else None
        resp = self._request("PUT", "/user", bearer=access_token, json={"email": new_email}, params=params)
        if resp.status_code in (401, 403):
            raise NotAuthenticatedError()
        return self._expect(resp, "Failed to request email change")

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        resp = self._request(
            "POST",
            "/token",
            json={"email": email, "password": password},
            params={"grant_type": "password"},
        )
        if resp.status_code in (400, 401):
            raise NotAuthenticatedError(self._error_message(resp, "Invalid credentials"))
        return self._expect(resp, "Invalid credentials")

    def sign_up(self, email: str, password: str, metadata: Dict[str, Any], redirect_to: Optional[str] = None) -> Dict[str, Any]:
        params = {"redirect_to": redirect_to} if redirect_to else None
        resp = self._request("POST", "/signup", json={"email": email, "password": password, "data": metadata}, params=params)
        return self._expect(resp, "Registration failed")

    def create_user(self, email: str, password: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._request(
            "POST",
            "/admin/users",
            json={"email": email, "password": password, "email_confirm": True, "user_metadata": metadata},
        )
        return self._expect(resp, "Registration failed")

    def send_password_reset(self, email: str, redirect_to: Optional[str] = None):
        params = {"redirect_to": redirect_to} if redirect_to else None
        resp = self._request("POST", "/recover", json={"email": email}, params=params)
        self._expect(resp, "Failed to send reset email")
