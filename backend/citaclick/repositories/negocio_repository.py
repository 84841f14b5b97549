"""Negocio repository."""

from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from citaclick.models.negocio import Negocio
from citaclick.models.subscription import Subscription


class NegocioRepository:

    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, negocio_id: str) -> Optional[Negocio]:
        """
        Get negocio by ID.

        Returns:
            Negocio if found, None otherwise
        """
        return self.db.query(Negocio).filter(Negocio.id == negocio_id).first()

    def list_ids(self) -> List[str]:
        """All negocio ids, ordered for deterministic sweeps."""
        rows = self.db.query(Negocio.id).order_by(Negocio.fecha_registro, Negocio.id).all()
        return [row[0] for row in rows]

    def list_with_subscription_state(self) -> List[Tuple[Negocio, Optional[Subscription]]]:
        """Every negocio paired with its subscription record (None if it has none)."""
        return (
            self.db.query(Negocio, Subscription)
            .outerjoin(Subscription, Subscription.tenant_id == Negocio.id)
            .order_by(Negocio.fecha_registro, Negocio.id)
            .all()
        )
