"""SQLAlchemy ORM models for Gavel."""

from gavel.models.base import Base
from gavel.models.listing import Listing
from gavel.models.auction import Auction
from gavel.models.bid import Bid
from gavel.models.deposit_authorization import DepositAuthorization
from gavel.models.order import Order
from gavel.models.processed_webhook_event import ProcessedWebhookEvent
from gavel.models.audit_log import AuditLog
from gavel.models.site_setting import SiteSetting

__all__ = [
    "Base",
    "Listing",
    "Auction",
    "Bid",
    "DepositAuthorization",
    "Order",
    "ProcessedWebhookEvent",
    "AuditLog",
    "SiteSetting",
]
