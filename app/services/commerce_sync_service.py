"""
Commerce mirror sync

Mirrors storefront products and customers into the record store and links
storefront customers to local customers by email.
"""
from typing import Any, Dict, List, Optional

from app.connectors.commerce import CommerceClient
from app.connectors.record_store import RecordStoreClient
from app.models.entities import Collections, Customer, EntityType
from app.services.entity_mapping_service import EntityMappingStore
from app.utils.helpers import normalize_email, utcnow_iso
from app.utils.logger import log


class CommerceSyncService:

    def __init__(
        self,
        store: RecordStoreClient,
        commerce: Optional[CommerceClient] = None,
        mappings: Optional[EntityMappingStore] = None
    ):
        self.store = store
        self.commerce = commerce
        self.mappings = mappings or EntityMappingStore(store)

    async def _upsert_mirror(self, collection: str, key: str, external_id: str, data: Dict[str, Any]) -> Dict:
        existing = await self.store.list(collection, {key: {"_eq": external_id}}, limit=1)
        if existing:
            return await self.store.update(collection, existing[0]["id"], data)
        return await self.store.create(collection, data)

    async def upsert_product(self, product: Dict[str, Any]) -> Dict:
        """Mirror one storefront product and refresh its product mapping"""
        commerce_id = str(product["id"])
        variants = product.get("variants") or []
        row = await self._upsert_mirror(Collections.COMMERCE_PRODUCTS, "commerce_product_id", commerce_id, {
            "commerce_product_id": commerce_id,
            "title": product.get("title"),
            "handle": product.get("handle"),
            "product_type": product.get("product_type"),
            "vendor": product.get("vendor"),
            "status": product.get("status"),
            "price": variants[0].get("price") if variants else None,
            "synced_at": utcnow_iso(),
        })
        await self.mappings.upsert_mapping(EntityType.PRODUCT.value, row["id"], commerce_id=commerce_id)
        return row

    async def upsert_customer(self, commerce_customer: Dict[str, Any]) -> Dict:
        """
        Mirror one storefront customer.

        The matching local customer (by email) is linked, or created when
        none exists. Linking is best-effort: a failure there is logged and
        the mirror row is still returned.
        """
        commerce_id = str(commerce_customer["id"])
        email = normalize_email(commerce_customer.get("email"))
        row = await self._upsert_mirror(Collections.COMMERCE_CUSTOMERS, "commerce_customer_id", commerce_id, {
            "commerce_customer_id": commerce_id,
            "email": email,
            "first_name": commerce_customer.get("first_name"),
            "last_name": commerce_customer.get("last_name"),
            "phone": commerce_customer.get("phone"),
            "orders_count": commerce_customer.get("orders_count"),
            "total_spent": commerce_customer.get("total_spent"),
            "synced_at": utcnow_iso(),
        })

        if not email:
            return row

        try:
            local = await self._link_local_customer(email, commerce_id, commerce_customer)
            await self.mappings.upsert_mapping(EntityType.CUSTOMER.value, local["id"], commerce_id=commerce_id)
        except Exception as e:
            log.error(f"Could not link commerce customer {commerce_id} to a local customer: {str(e)}")

        return row

    async def _link_local_customer(self, email: str, commerce_id: str, commerce_customer: Dict[str, Any]) -> Dict:
        matches = await self.store.find_customers_by_email(email)
        if matches:
            local = matches[0]
            if local.get("commerce_customer_id") == commerce_id:
                return local
            return await self.store.update_customer(local["id"], {"commerce_customer_id": commerce_id})

        customer = Customer(
            email=email,
            first_name=commerce_customer.get("first_name"),
            last_name=commerce_customer.get("last_name"),
            phone=commerce_customer.get("phone"),
            commerce_customer_id=commerce_id,
        )
        created = await self.store.create_customer(customer.to_record())
        log.info(f"Created customer {created['id']} from commerce customer {commerce_id}")
        return created

    async def run_full_pull(self) -> Dict[str, Any]:
        """
        Pull every product and customer from the storefront

        Listing failures propagate; per-item failures are collected.
        """
        if self.commerce is None:
            raise RuntimeError("commerce client is not configured")

        synced = 0
        errors: List[str] = []

        for product in await self.commerce.get_products():
            try:
                await self.upsert_product(product)
                synced += 1
            except Exception as e:
                log.error(f"Error syncing commerce product {product.get('id')}: {str(e)}")
                errors.append(f"product {product.get('id')}: {str(e)}")

        for customer in await self.commerce.get_customers():
            try:
                await self.upsert_customer(customer)
                synced += 1
            except Exception as e:
                log.error(f"Error syncing commerce customer {customer.get('id')}: {str(e)}")
                errors.append(f"customer {customer.get('id')}: {str(e)}")

        await self._touch_settings()
        log.info(f"Commerce pull complete: {synced} records, {len(errors)} errors")
        return {"synced": synced, "errors": errors}

    async def _touch_settings(self) -> None:
        rows = await self.store.list(Collections.COMMERCE_SETTINGS, {"active": {"_eq": True}}, limit=1)
        if rows:
            await self.store.update(Collections.COMMERCE_SETTINGS, rows[0]["id"], {"last_sync": utcnow_iso()})
