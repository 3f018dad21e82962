"""Entity store: lookup/list/create/update/delete over the ORM session."""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Type
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tiktok_accounts.models.analytics_snapshot import AnalyticsSnapshot
from tiktok_accounts.models.group import Group
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.models.user import User
from tiktok_accounts.utils.errors import ConflictError, NotFoundError


logger = logging.getLogger(__name__)


class EntityStore:
    """
    Narrow persistence contract used by the core.
    
    Entities are addressed by kind name and identifier. Missing rows raise
    NotFoundError, unique-constraint violations raise ConflictError; any
    other database failure propagates unchanged.
    """
    
    USER = "user"
    GROUP = "group"
    ACCOUNT = "account"
    SNAPSHOT = "snapshot"
    
    _MODELS: Dict[str, Type] = {
        USER: User,
        GROUP: Group,
        ACCOUNT: TikTokAccount,
        SNAPSHOT: AnalyticsSnapshot,
    }
    
    def __init__(self, db: Session):
        """
        Initialize entity store.
        
        Args:
            db: Database session
        """
        self.db = db
    
    @classmethod
    def model_for(cls, kind: str) -> Type:
        try:
            return cls._MODELS[kind]
        except KeyError:
            raise ValueError(f"Unknown entity kind: {kind}") from None
    
    @classmethod
    def kind_of(cls, entity: Any) -> str:
        for kind, model in cls._MODELS.items():
            if isinstance(entity, model):
                return kind
        raise ValueError(f"Unsupported entity type: {type(entity).__name__}")
    
    def get(self, kind: str, entity_id: UUID) -> Optional[Any]:
        """Return the entity or None."""
        return self.db.get(self.model_for(kind), entity_id)
    
    def find(self, kind: str, entity_id: UUID) -> Any:
        """
        Return the entity with the given id.
        
        Raises:
            NotFoundError: If no such entity exists
        """
        entity = self.get(kind, entity_id)
        if entity is None:
            raise NotFoundError(kind, entity_id)
        return entity
    
    def list(self, kind: str, *predicates, order_by=None) -> List[Any]:
        """
        List entities matching all predicates.
        
        Args:
            kind: Entity kind
            *predicates: SQLAlchemy filter expressions
            order_by: Optional ordering (defaults to creation order)
        """
        model = self.model_for(kind)
        query = self.db.query(model).filter(*predicates)
        if order_by is None:
            query = query.order_by(model.created_at.asc(), model.id.asc())
        else:
            query = query.order_by(order_by)
        return query.all()
    
    def create(self, entity: Any) -> Any:
        """Insert a new entity and flush so its id is available."""
        with self._savepoint(entity):
            self.db.add(entity)
        return entity
    
    def update(self, entity: Any, **changes: Any) -> Any:
        """Apply changes to an already-persistent entity and flush them."""
        with self._savepoint(entity):
            for name, value in changes.items():
                setattr(entity, name, value)
        return entity
    
    def delete(self, kind: str, entity_id: UUID) -> None:
        """
        Delete an entity (cascades follow the model relationships).
        
        Raises:
            NotFoundError: If no such entity exists
        """
        entity = self.find(kind, entity_id)
        self.db.delete(entity)
        self.db.flush()
        logger.info("Deleted %s %s", kind, entity_id)
    
    @contextmanager
    def _savepoint(self, entity: Any) -> Iterator[None]:
        """
        Run one entity write inside a SAVEPOINT.
        
        A failed write rolls back to the savepoint only; the rest of the
        caller's transaction is kept. Unique violations become
        ConflictError, other integrity errors propagate.
        """
        try:
            with self.db.begin_nested():
                yield
                self.db.flush()
        except IntegrityError as e:
            if not self._is_unique_violation(e):
                raise
            raise ConflictError(
                f"Unique constraint violated for {type(entity).__name__}",
                getattr(entity, "id", None),
                {"entity": self.kind_of(entity), "constraint": str(e.orig)}
            ) from e
    
    @staticmethod
    def _is_unique_violation(error: IntegrityError) -> bool:
        # SQLite: "UNIQUE constraint failed"; PostgreSQL: "duplicate key value
        # violates unique constraint"; MySQL: "Duplicate entry"
        message = str(error.orig).lower()
        return "unique" in message or "duplicate" in message
