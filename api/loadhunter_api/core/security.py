import hashlib
import hmac
import logging
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from loadhunter_api.core.auth import Principal, PrincipalType
from loadhunter_api.core.config import Settings, get_settings
from loadhunter_api.services.repository import MachineCredentialRecord, RepositoryUnavailableError, get_repository

ROLE_SCOPES: dict[str, set[str]] = {
    "user": set(),
    "dispatcher": {"matches:read", "matches:write", "hunt_plans:write"},
    "admin": {"matches:read", "matches:write", "hunt_plans:write", "admin:read", "admin:write"},
}
ROLE_PRECEDENCE = ("admin", "dispatcher")

logger = logging.getLogger(__name__)


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    """Workers and connectors: module id plus an API key whose sha256 is on file."""
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"machine auth requires {settings.api_key_header} and X-Module-Id",
        )

    try:
        credentials = await repository.get_machine_credentials(x_module_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    credential = _match_credential(credentials, x_api_key)
    if credential is None:
        logger.warning("rejected module credentials module_id=%s", x_module_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=credential.module_id,
        scopes=set(credential.scopes),
        actor_id=credential.module_db_id,
    )


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    """Dispatchers and admins: a Supabase session whose ``app_metadata`` carries role and tenant."""
    token = _bearer_token(authorization)
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    return _principal_for_user(user)


def _bearer_token(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )
    token = token.strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")
    return token


def _match_credential(credentials: list[MachineCredentialRecord], api_key: str) -> MachineCredentialRecord | None:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    for credential in credentials:
        if hmac.compare_digest(credential.key_hash, key_hash):
            return credential
    return None


def _principal_for_user(user: dict[str, Any]) -> Principal:
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    app_metadata = user.get("app_metadata")
    metadata = app_metadata if isinstance(app_metadata, dict) else {}
    role = _resolve_human_role(metadata)
    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES.get(role, ROLE_SCOPES["user"])),
        actor_id=user_id,
        tenant_id=_resolve_tenant_id(metadata),
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(
                f"{supabase_url.rstrip('/')}/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": supabase_anon_key},
            )
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )
    return response.json()


def _resolve_human_role(app_metadata: dict[str, Any]) -> str:
    role = app_metadata.get("role")
    if isinstance(role, str) and role:
        return role
    roles = app_metadata.get("roles")
    if isinstance(roles, list):
        return next((candidate for candidate in ROLE_PRECEDENCE if candidate in roles), "user")
    return "user"


def _resolve_tenant_id(app_metadata: dict[str, Any]) -> str | None:
    tenant_id = app_metadata.get("tenant_id")
    if isinstance(tenant_id, str) and tenant_id.strip():
        return tenant_id.strip()
    return None
