"""FastAPI dependencies: root key authentication and tenant-scoped sessions."""

import secrets
import uuid
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.config import Settings, get_settings
from eventrelay.crypto import SecretVault
from eventrelay.db.session import get_session, set_tenant_context


async def require_api_key(
    x_api_key: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Require the root API key in ``X-API-Key`` (timing-safe comparison)."""
    if not x_api_key or not secrets.compare_digest(
        x_api_key, settings.root_api_key.get_secret_value()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


async def get_tenant_session(
    tenant_id: Annotated[uuid.UUID, Path()],
    session: AsyncSession = Depends(get_session),
) -> AsyncSession:
    """Request session pinned to the tenant in the URL."""
    await set_tenant_context(session, tenant_id)
    return session


def get_vault(settings: Settings = Depends(get_settings)) -> SecretVault:
    """SecretVault built from the configured webhook secret key."""
    return SecretVault.from_settings(settings)


TenantSession = Annotated[AsyncSession, Depends(get_tenant_session)]
Vault = Annotated[SecretVault, Depends(get_vault)]
