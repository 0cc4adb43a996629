"""Create/read/update/delete for tenant-owned records, with audit.

Routes pass validated request models; storage goes through the scope.
"""
from typing import Any, Dict, List, Mapping, Optional
import logging
import uuid

from models import AuditAction
from services.tenant_store import TenantScope
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


async def create_record(scope: TenantScope, collection: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
    records = scope.collection(collection)
    record = await records.insert_one({records.id_field: str(uuid.uuid4()), **fields})
    await create_audit_log(
        action=AuditAction.RECORD_CREATED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        resource_type=collection,
        resource_id=record[records.id_field],
    )
    return record


async def list_records(
    scope: TenantScope,
    collection: str,
    filter: Optional[Mapping[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    cursor = scope.collection(collection).find(filter or {}).sort(sort or [("created_at", -1)]).skip(skip).limit(limit)
    return await cursor.to_list(length=limit)


async def get_record(scope: TenantScope, collection: str, record_id: str) -> Dict[str, Any]:
    return await scope.collection(collection).get_or_404(record_id)


async def update_record(scope: TenantScope, collection: str, record_id: str,
                        changes: Mapping[str, Any]) -> Dict[str, Any]:
    records = scope.collection(collection)
    before = await records.get_or_404(record_id)
    if changes:
        await records.update_one({records.id_field: record_id}, {"$set": dict(changes)})
    after = await records.get_or_404(record_id)
    await create_audit_log(
        action=AuditAction.RECORD_UPDATED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        resource_type=collection,
        resource_id=record_id,
        before_state={k: before.get(k) for k in changes},
        after_state={k: after.get(k) for k in changes},
    )
    return after


async def delete_record(scope: TenantScope, collection: str, record_id: str) -> Dict[str, Any]:
    records = scope.collection(collection)
    await records.get_or_404(record_id)
    await records.delete_one({records.id_field: record_id})
    await create_audit_log(
        action=AuditAction.RECORD_DELETED,
        actor_id=scope.tenant_id,
        tenant_id=scope.tenant_id,
        resource_type=collection,
        resource_id=record_id,
    )
    return {"success": True}
