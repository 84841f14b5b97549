"""Repository layer with tenant isolation enforcement."""

from citaclick.repositories.subscription_repository import SubscriptionRepository
from citaclick.repositories.negocio_repository import NegocioRepository

__all__ = ["SubscriptionRepository", "NegocioRepository"]
