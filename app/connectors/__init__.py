"""Provider clients for the CRM reconciliation engine"""

from app.connectors.base import BaseConnector, ConnectorError, CouponCreationError, ProviderError
from app.connectors.commerce import CommerceClient
from app.connectors.payments import PaymentsClient
from app.connectors.record_store import RecordStoreClient

__all__ = [
    "BaseConnector",
    "ConnectorError",
    "ProviderError",
    "CouponCreationError",
    "CommerceClient",
    "PaymentsClient",
    "RecordStoreClient"
]
