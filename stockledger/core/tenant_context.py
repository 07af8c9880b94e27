from dataclasses import dataclass

from fastapi import Header, HTTPException


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    actor_id: str | None


def get_tenant_context(
    x_tenant_id: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> TenantContext:
    """
    Authentication happens upstream; the gateway forwards the resolved tenant
    and acting user as headers.
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Missing X-Tenant-ID header")
    actor_id = (x_actor_id or "").strip() or None
    return TenantContext(tenant_id=tenant_id, actor_id=actor_id)
