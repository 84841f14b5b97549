"""
Subscription repository for data access operations.

Reads for entitlement checks are plain snapshot reads; the lifecycle engine
uses get_by_tenant_for_update to serialise writers on the row.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from citaclick.models.subscription import Subscription

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """
    Repository for subscription data access.

    All tenant lookups take tenant_id from the authenticated context.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get_by_tenant(self, tenant_id: str) -> Optional[Subscription]:
        """
        Get the subscription record of a negocio.

        Args:
            tenant_id: Negocio ID

        Returns:
            Subscription if found, None otherwise
        """
        return self.db.query(Subscription).filter(
            Subscription.tenant_id == tenant_id
        ).first()

    def get_by_tenant_for_update(self, tenant_id: str) -> Optional[Subscription]:
        """
        Get the subscription record with a row lock (SELECT ... FOR UPDATE).

        SQLite ignores the lock clause; the engine's in-process lock covers
        single-process deployments.
        """
        return self.db.query(Subscription).filter(
            Subscription.tenant_id == tenant_id
        ).with_for_update().populate_existing().first()

    def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        """
        Get subscription by provider subscription id.

        Args:
            external_subscription_id: Provider subscription id

        Returns:
            Subscription if found, None otherwise
        """
        if not external_subscription_id:
            return None
        return self.db.query(Subscription).filter(
            Subscription.external_subscription_id == external_subscription_id
        ).first()

    def add(self, subscription: Subscription) -> Subscription:
        subscription.validate_period()
        self.db.add(subscription)
        self.db.flush()
        return subscription
