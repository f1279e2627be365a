"""
Order Store - Persistence and caching for the order lifecycle

Three layers:
- OrderRepository: durable store port, implemented with SQLAlchemy (blocking;
  the state store calls it from worker threads via asyncio.to_thread)
- SnapshotCache: TTL'd read-through cache port, with an in-process implementation
- OrderStateStore: the only writer of orders; validates transitions,
  persists, refreshes the cache and publishes one status update per transition
"""

import asyncio
import json
import threading
import time
from abc import ABC, abstractmethod
from contextlib import nullcontext
from datetime import timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from loguru import logger
from sqlalchemy import Column, DateTime, Index, Integer, Numeric, String, Text, create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import InvalidTransitionError, NotFoundError, QueueFullOrDuplicateError
from .event_bus import EventBus
from .order_schemas import (
    CONFIRMATION_FIELDS,
    UPDATABLE_FIELDS,
    CreateOrderRequest,
    Order,
    OrderStatus,
    OrderType,
    can_transition,
    utc_now,
)

Base = declarative_base()


class StoredOrder(Base):
    """Database model for orders"""
    __tablename__ = 'orders'

    id = Column(String(64), primary_key=True)
    order_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False)

    token_in = Column(String(50), nullable=False)
    token_out = Column(String(50), nullable=False)
    amount_in = Column(Numeric(20, 8, asdecimal=False), nullable=False)
    amount_out = Column(Numeric(20, 8, asdecimal=False))
    slippage = Column(Numeric(5, 4, asdecimal=False))
    limit_price = Column(Numeric(20, 8, asdecimal=False))

    selected_dex = Column(String(50))
    execution_price = Column(Numeric(20, 8, asdecimal=False))
    tx_hash = Column(Text)
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_orders_status', 'status'),
        Index('idx_orders_created_at', 'created_at'),
        Index('idx_orders_tx_hash', 'tx_hash'),
    )


# Order attribute -> column name, where they differ
_COLUMN_NAMES = {'selected_provider': 'selected_dex'}

_PROVIDER_STAGES = (OrderStatus.BUILDING, OrderStatus.SUBMITTED, OrderStatus.CONFIRMED)


def _aware(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderRepository(ABC):
    """Durable order store port"""

    @abstractmethod
    def insert(self, order: Order) -> Order:
        """Persist a new order; raises QueueFullOrDuplicateError if the id exists"""
        pass

    @abstractmethod
    def update_fields(self, order_id: str, fields: Mapping[str, Any]) -> Order:
        """Apply a partial update and return the stored row; raises NotFoundError"""
        pass

    @abstractmethod
    def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    def aggregate_by_status(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def list_by_status(self, statuses: Iterable[OrderStatus]) -> List[Order]:
        """Orders currently in any of ``statuses``, oldest first"""
        pass

    def close(self) -> None:
        pass


class SqlOrderRepository(OrderRepository):
    """SQLAlchemy-backed order repository (PostgreSQL in production, SQLite locally)"""

    def __init__(self, database_url: str = "sqlite:///:memory:", echo: bool = False):
        engine_kwargs: Dict[str, Any] = {'echo': echo}
        if database_url.startswith("sqlite"):
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
                # One shared connection, otherwise every session sees an empty database
                engine_kwargs['poolclass'] = StaticPool

        self.database_url = database_url
        # SQLite has a single writer; sessions from different threads take turns
        self._lock = threading.Lock() if database_url.startswith("sqlite") else nullcontext()
        self.engine = create_engine(database_url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.init_schema()
        logger.info(f"Order repository initialized with database: {self.engine.url.render_as_string(hide_password=True)}")

    def init_schema(self) -> None:
        """Create the orders table and its indexes if missing"""
        Base.metadata.create_all(self.engine)

    def insert(self, order: Order) -> Order:
        row = StoredOrder(
            id=order.id,
            order_type=order.order_type.value,
            status=order.status.value,
            token_in=order.token_in,
            token_out=order.token_out,
            amount_in=order.amount_in,
            slippage=order.slippage,
            limit_price=order.limit_price,
            retry_count=order.retry_count,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
        with self._lock, self.session_factory() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise QueueFullOrDuplicateError(f"Order {order.id} already exists")
            return self._row_to_order(row)

    def update_fields(self, order_id: str, fields: Mapping[str, Any]) -> Order:
        with self._lock, self.session_factory() as session:
            row = session.get(StoredOrder, order_id)
            if row is None:
                raise NotFoundError(order_id)
            for name, value in fields.items():
                if isinstance(value, OrderStatus):
                    value = value.value
                setattr(row, _COLUMN_NAMES.get(name, name), value)
            session.commit()
            return self._row_to_order(row)

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock, self.session_factory() as session:
            row = session.get(StoredOrder, order_id)
            return self._row_to_order(row) if row is not None else None

    def aggregate_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OrderStatus}
        with self._lock, self.session_factory() as session:
            rows = session.execute(
                select(StoredOrder.status, func.count(StoredOrder.id)).group_by(StoredOrder.status)
            )
            for status, count in rows:
                counts[status] = count
        return counts

    def list_by_status(self, statuses: Iterable[OrderStatus]) -> List[Order]:
        values = [status.value for status in statuses]
        with self._lock, self.session_factory() as session:
            rows = session.scalars(
                select(StoredOrder)
                .where(StoredOrder.status.in_(values))
                .order_by(StoredOrder.created_at, StoredOrder.id)
            )
            return [self._row_to_order(row) for row in rows]

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _row_to_order(row: StoredOrder) -> Order:
        return Order(
            id=row.id,
            order_type=OrderType(row.order_type),
            status=OrderStatus(row.status),
            token_in=row.token_in,
            token_out=row.token_out,
            amount_in=row.amount_in,
            amount_out=row.amount_out,
            slippage=row.slippage,
            limit_price=row.limit_price,
            selected_provider=row.selected_dex,
            execution_price=row.execution_price,
            tx_hash=row.tx_hash,
            error_message=row.error_message,
            retry_count=row.retry_count or 0,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            confirmed_at=_aware(row.confirmed_at),
        )


class SnapshotCache(ABC):
    """Read-through snapshot cache port"""

    @abstractmethod
    def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    def put(self, order_id: str, order: Order, ttl_seconds: float) -> None:
        pass

    def purge_expired(self) -> int:
        return 0


class InMemorySnapshotCache(SnapshotCache):
    """
    In-process TTL cache holding serialized order snapshots

    Entries are stored as JSON so callers always get an independent copy,
    the same contract a networked cache gives.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, str]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            entry = self._entries.get(order_id)
            if entry is None:
                self.misses += 1
                return None
            expires_at, payload = entry
            if self._clock() >= expires_at:
                del self._entries[order_id]
                self.misses += 1
                return None
            self.hits += 1
        return Order.from_dict(json.loads(payload))

    def put(self, order_id: str, order: Order, ttl_seconds: float) -> None:
        payload = json.dumps(order.to_dict())
        with self._lock:
            self._entries[order_id] = (self._clock() + ttl_seconds, payload)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class OrderStateStore:
    """
    Owner of the order lifecycle

    Methods are coroutines; repository calls run in a worker thread so the
    event loop keeps serving while the database is busy.

    Writes go to the durable store first, then overwrite the cached
    snapshot, then publish exactly one status update. Reads try the cache
    and fall back to the durable store, repopulating the cache on a miss.
    """

    def __init__(self, repository: OrderRepository, cache: SnapshotCache,
                 event_bus: EventBus, cache_ttl_seconds: float = 3600):
        self.repository = repository
        self.cache = cache
        self.event_bus = event_bus
        self.cache_ttl_seconds = cache_ttl_seconds

    async def create_order(self, request: CreateOrderRequest) -> Order:
        """Persist a new PENDING order from a validated request"""
        order = Order(
            id=request.order_id or Order.generate_order_id(),
            order_type=request.order_type,
            token_in=request.token_in,
            token_out=request.token_out,
            amount_in=request.amount_in,
            slippage=request.slippage,
            limit_price=request.limit_price,
            status=OrderStatus.PENDING,
            retry_count=0,
        )
        order = await asyncio.to_thread(self.repository.insert, order)
        self._cache(order)

        logger.info(f"[{order.short_id}] Created {order.order_type.value} order: "
                    f"{order.amount_in} {order.token_in} -> {order.token_out}")
        self.event_bus.publish(order.id, OrderStatus.PENDING, {
            'message': 'Order received and queued for execution',
            'order_type': order.order_type.value,
        })
        return order

    async def get_order(self, order_id: str) -> Order:
        """Return the current order snapshot; raises NotFoundError"""
        cached = self.cache.get(order_id)
        if cached is not None:
            return cached

        order = await asyncio.to_thread(self.repository.get, order_id)
        if order is None:
            raise NotFoundError(order_id)
        self._cache(order)
        return order

    async def exists(self, order_id: str) -> bool:
        if self.cache.get(order_id) is not None:
            return True
        return await asyncio.to_thread(self.repository.get, order_id) is not None

    async def update_status(self, order_id: str, new_status: OrderStatus,
                      fields: Optional[Mapping[str, Any]] = None,
                      payload: Optional[Mapping[str, Any]] = None) -> Order:
        """
        Apply one lifecycle transition atomically

        Args:
            order_id: Order to transition
            new_status: Target status
            fields: Stage-specific order fields (selected_provider, the
                confirmation fields, error_message, retry_count)
            payload: Extra data carried by the published status update

        Returns:
            The stored order after the transition

        Raises:
            NotFoundError: unknown order id
            InvalidTransitionError: illegal transition or misuse of stage fields
        """
        fields = dict(fields or {})

        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidTransitionError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        current = await asyncio.to_thread(self.repository.get, order_id)
        if current is None:
            raise NotFoundError(order_id)

        if not can_transition(current.status, new_status):
            raise InvalidTransitionError(
                f"Order {order_id}: {current.status.value} -> {new_status.value} is not allowed"
            )

        confirmation = [name for name in CONFIRMATION_FIELDS if fields.get(name) is not None]
        if new_status == OrderStatus.CONFIRMED:
            if len(confirmation) != len(CONFIRMATION_FIELDS):
                raise InvalidTransitionError(
                    f"Order {order_id}: CONFIRMED requires {', '.join(CONFIRMATION_FIELDS)}"
                )
        elif confirmation:
            raise InvalidTransitionError(
                f"Order {order_id}: {', '.join(confirmation)} may only be set on CONFIRMED"
            )

        now = utc_now()
        fields['status'] = new_status
        fields['updated_at'] = now
        if new_status == OrderStatus.CONFIRMED:
            fields['confirmed_at'] = now

        order = await asyncio.to_thread(self.repository.update_fields, order_id, fields)
        self._cache(order)

        data = dict(payload or {})
        if order.selected_provider and new_status in _PROVIDER_STAGES:
            data.setdefault('provider', order.selected_provider)
        if new_status == OrderStatus.FAILED:
            data.setdefault('error', order.error_message)
            data.setdefault('retry_count', order.retry_count)
        self.event_bus.publish(order_id, new_status, data)
        return order

    async def status_counts(self) -> Dict[str, int]:
        return await asyncio.to_thread(self.repository.aggregate_by_status)

    async def list_by_status(self, *statuses: OrderStatus) -> List[Order]:
        """Stored orders in any of ``statuses``, oldest first"""
        return await asyncio.to_thread(self.repository.list_by_status, statuses)

    def _cache(self, order: Order) -> None:
        self.cache.put(order.id, order, self.cache_ttl_seconds)
