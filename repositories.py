from abc import ABC, abstractmethod
from typing import Dict, Generic, List, Optional, TypeVar
import threading

from models import Account, Product

T = TypeVar("T", Account, Product)


class Repository(ABC, Generic[T]):
    """Store of entities keyed by id.

    ``get``, ``list`` and ``delete`` hand out copies: a change becomes visible only once
    it is written back with ``put``.
    """

    @abstractmethod
    def get(self, entity_id: str) -> Optional[T]:
        """Get entity by id. Returns None if it doesn't exist."""
        pass

    @abstractmethod
    def put(self, entity: T) -> None:
        """Insert or replace an entity."""
        pass

    @abstractmethod
    def delete(self, entity_id: str) -> Optional[T]:
        """Remove an entity. Returns the removed entity, or None."""
        pass

    @abstractmethod
    def list(self) -> List[T]:
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def get_lock(self, entity_id: str) -> threading.Lock:
        """Get the lock guarding read-modify-write of a single entity.

        Callers check that the entity exists first; ``delete`` drops the lock.
        """
        pass


class AccountRepository(Repository[Account]):
    pass


class ProductRepository(Repository[Product]):
    pass


class InMemoryRepository(Repository[T]):
    def __init__(self):
        self.entities: Dict[str, T] = {}
        self.locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, entity_id: str) -> Optional[T]:
        entity = self.entities.get(entity_id)
        return entity.model_copy() if entity is not None else None

    def put(self, entity: T) -> None:
        self.entities[entity.id] = entity.model_copy()

    def delete(self, entity_id: str) -> Optional[T]:
        with self._guard:
            self.locks.pop(entity_id, None)
        entity = self.entities.pop(entity_id, None)
        return entity.model_copy() if entity is not None else None

    def list(self) -> List[T]:
        return [entity.model_copy() for entity in list(self.entities.values())]

    def count(self) -> int:
        return len(self.entities)

    def get_lock(self, entity_id: str) -> threading.Lock:
        with self._guard:
            return self.locks.setdefault(entity_id, threading.Lock())


class InMemoryAccountRepository(InMemoryRepository[Account], AccountRepository):
    pass


class InMemoryProductRepository(InMemoryRepository[Product], ProductRepository):
    pass


# Singleton instances, swapped out by reset_repositories()
_account_repo = InMemoryAccountRepository()
_product_repo = InMemoryProductRepository()


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_product_repository() -> ProductRepository:
    return _product_repo


def reset_repositories():
    """Reset all repositories to an empty state (for testing only)."""
    global _account_repo, _product_repo
    _account_repo = InMemoryAccountRepository()
    _product_repo = InMemoryProductRepository()
