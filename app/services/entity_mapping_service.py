"""
Entity Mapping Store

Cross-provider identity links: one row per (entity_type, local_id) holding
the payments and commerce ids of the same entity.
"""
from typing import Dict, List, Optional

from app.connectors.record_store import RecordStoreClient
from app.models.entities import Collections, EntityMapping, EntityType
from app.utils.helpers import days_ago, parse_datetime, utcnow_iso
from app.utils.logger import log

STALE_AFTER_DAYS = 7


class EntityMappingStore:
    """Update-or-insert access to the entity_mappings collection"""

    def __init__(self, store: RecordStoreClient, stale_after_days: int = STALE_AFTER_DAYS):
        self.store = store
        self.stale_after_days = stale_after_days

    async def get_mapping(self, entity_type: str, local_id: str) -> Optional[Dict]:
        rows = await self.store.list(
            Collections.ENTITY_MAPPINGS,
            {
                "entity_type": {"_eq": EntityType(entity_type).value},
                "local_id": {"_eq": local_id},
            },
        )
        if len(rows) > 1:
            log.warning(f"{len(rows)} mappings found for {entity_type} {local_id}; using the newest")
        return rows[0] if rows else None

    async def upsert_mapping(
        self,
        entity_type: str,
        local_id: str,
        payments_id: Optional[str] = None,
        commerce_id: Optional[str] = None
    ) -> Dict:
        """
        Write the mapping for (entity_type, local_id)

        Existing external ids are kept when the caller passes None, so a
        partial refresh never erases a link it did not observe.
        """
        existing = await self.get_mapping(entity_type, local_id)
        now = utcnow_iso()

        if existing:
            updates = {"last_synced": now}
            if payments_id is not None:
                updates["payments_id"] = payments_id
            if commerce_id is not None:
                updates["commerce_id"] = commerce_id
            return await self.store.update(Collections.ENTITY_MAPPINGS, existing["id"], updates)

        mapping = EntityMapping(
            entity_type=entity_type,
            local_id=local_id,
            payments_id=payments_id,
            commerce_id=commerce_id,
            last_synced=now,
        )
        return await self.store.create(Collections.ENTITY_MAPPINGS, mapping.to_record())

    async def list_mappings(self, entity_type: Optional[str] = None) -> List[Dict]:
        filter = {"entity_type": {"_eq": EntityType(entity_type).value}} if entity_type else None
        return await self.store.list(Collections.ENTITY_MAPPINGS, filter)

    async def list_stale(self, days: Optional[int] = None) -> List[Dict]:
        """Mappings whose last_synced is older than the staleness window"""
        cutoff = days_ago(self.stale_after_days if days is None else days)
        mappings = await self.store.list(Collections.ENTITY_MAPPINGS)
        stale = []
        for mapping in mappings:
            last_synced = parse_datetime(mapping.get("last_synced"))
            if last_synced is None or last_synced < cutoff:
                stale.append(mapping)
        return stale

