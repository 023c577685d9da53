"""Session verification and workspace authorisation for enrichment requests.

There is no anonymous path: a request without a verifiable bearer session
and a workspace membership never reaches the limiter or a provider.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import httpx

from company_enrichment.services.enrichment.observability import get_logger
from company_enrichment.services.enrichment.stores import MembershipStore
from company_enrichment.services.enrichment.types import EnrichmentError, ErrorCategory, Principal
from company_enrichment.services.enrichment.url_validation import is_uuid

logger = get_logger(__name__)


class IdentityServiceError(RuntimeError):
    """The identity provider could not be reached or answered with a 5xx."""


class IdentityVerifier(Protocol):
    async def get_user_id(self, token: str) -> Optional[str]:
        """User ID for a valid session, ``None`` for an invalid or expired one."""
        ...


class HttpIdentityVerifier:
    """Verifies bearer tokens with ``GET {auth_url}/user``."""

    def __init__(
        self,
        *,
        auth_url: str,
        anon_key: str = "",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._user_url = auth_url.rstrip("/") + "/user"
        self._anon_key = anon_key
        self._timeout = timeout_seconds
        self._transport = transport

    async def get_user_id(self, token: str) -> Optional[str]:
        headers = {"Authorization": f"Bearer {token}"}
        if self._anon_key:
            headers["apikey"] = self._anon_key
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(self._user_url, headers=headers)
        except httpx.HTTPError as exc:
            raise IdentityServiceError(str(exc) or exc.__class__.__name__) from exc

        if resp.status_code >= 500:
            raise IdentityServiceError(f"identity provider returned {resp.status_code}")
        if resp.status_code != 200:
            return None
        try:
            body = resp.json()
        except ValueError:
            return None
        user_id = body.get("id") if isinstance(body, dict) else None
        return str(user_id) if user_id else None


class StaticIdentityVerifier:
    """Token -> user map, for tests and local development."""

    def __init__(self, tokens: Optional[Dict[str, str]] = None) -> None:
        self._tokens = dict(tokens or {})

    def add(self, token: str, user_id: str) -> None:
        self._tokens[token] = user_id

    async def get_user_id(self, token: str) -> Optional[str]:
        return self._tokens.get(token)


def _auth_error(message: str, status_code: int, category: ErrorCategory = ErrorCategory.auth_error) -> EnrichmentError:
    return EnrichmentError(message, category=category, status_code=status_code)


def resolve_workspace_id(body_workspace_id: Any, header_workspace_id: Optional[str]) -> Optional[str]:
    """Body value wins over the ``X-Workspace-Id`` header."""
    if isinstance(body_workspace_id, str) and body_workspace_id.strip():
        return body_workspace_id.strip()
    if header_workspace_id and header_workspace_id.strip():
        return header_workspace_id.strip()
    return None


class AuthGuard:
    def __init__(self, identity: IdentityVerifier, memberships: MembershipStore) -> None:
        self._identity = identity
        self._memberships = memberships

    async def authenticate(self, authorization: Optional[str], workspace_id: Optional[str]) -> Principal:
        if not authorization:
            raise _auth_error("Authentication required. Please sign in.", 401)
        if not authorization.startswith("Bearer "):
            raise _auth_error("Invalid authorization format. Use Bearer token.", 401)
        if not workspace_id:
            raise _auth_error("Workspace ID is required.", 400, ErrorCategory.validation_error)
        if not is_uuid(workspace_id):
            raise _auth_error("Invalid workspace ID format.", 400, ErrorCategory.validation_error)

        token = authorization[len("Bearer "):].strip()
        if not token:
            raise _auth_error("Invalid or expired session. Please sign in again.", 401)

        try:
            user_id = await self._identity.get_user_id(token)
        except IdentityServiceError as exc:
            logger.error("auth.identity_unavailable", error=str(exc)[:500])
            raise _auth_error("Authentication failed.", 500, ErrorCategory.internal_error) from exc
        if not user_id:
            raise _auth_error("Invalid or expired session. Please sign in again.", 401)

        try:
            role = await self._memberships.get_role(workspace_id, user_id)
        except Exception as exc:
            logger.error("auth.membership_check_failed", error=str(exc)[:500], user_id=user_id)
            raise _auth_error("Failed to verify workspace access.", 500, ErrorCategory.internal_error) from exc
        if role is None:
            raise _auth_error("Access denied. You are not a member of this workspace.", 403)

        is_admin = False
        try:
            is_admin = await self._memberships.is_platform_admin(user_id)
        except Exception as exc:
            # Convenience flag only; default to a regular member.
            logger.warning("auth.admin_lookup_failed", error=str(exc)[:500], user_id=user_id)

        return Principal(user_id=user_id, workspace_id=workspace_id, is_admin=bool(is_admin))
