from __future__ import annotations

from typing import Any

from src.domain.eca_errors import StorageError, TenantNotFound
from src.models.eca import TenantContext


class SupabaseTenantResolver:
    def __init__(self, client: Any) -> None:
        self._client = client

    def resolve(self, organization_id: str) -> TenantContext:
        try:
            result = (
                self._client.table("organizations")
                .select("id, name, slug, business_data")
                .eq("id", organization_id)
                .is_("deleted_at", "null")
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise StorageError("resolve_tenant", exc) from exc
        if not result.data:
            raise TenantNotFound(organization_id)
        row = result.data[0]
        return TenantContext(
            organization_id=str(row["id"]),
            slug=row.get("slug"),
            name=row.get("name"),
            business_data=row.get("business_data") or {},
        )
