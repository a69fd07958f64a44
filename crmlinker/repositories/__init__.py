from .businesses import BusinessRepository
from .links import LinkRepository

__all__ = ["BusinessRepository", "LinkRepository"]
