"""
Order Schemas - Data structures for order execution

Covers the order entity and its lifecycle, the creation request accepted
from callers, and the transient records produced while an order is routed
and executed (quotes, execution results, status updates).
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from .errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OrderType(Enum):
    """Order kinds accepted by the engine"""
    MARKET = "market"
    LIMIT = "limit"
    SNIPER = "sniper"


class OrderStatus(Enum):
    """Order lifecycle status"""
    PENDING = "pending"           # Created, waiting for a worker
    ROUTING = "routing"           # Comparing provider quotes
    BUILDING = "building"         # Provider selected, building the trade
    SUBMITTED = "submitted"       # Sent to the provider
    CONFIRMED = "confirmed"       # Executed (terminal)
    FAILED = "failed"             # Attempt failed (terminal unless retried)

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.CONFIRMED, OrderStatus.FAILED)


# FAILED -> ROUTING is the start of a retry attempt; everything else moves forward only.
ALLOWED_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.ROUTING, OrderStatus.FAILED},
    OrderStatus.ROUTING: {OrderStatus.BUILDING, OrderStatus.FAILED},
    OrderStatus.BUILDING: {OrderStatus.SUBMITTED, OrderStatus.FAILED},
    OrderStatus.SUBMITTED: {OrderStatus.CONFIRMED, OrderStatus.FAILED},
    OrderStatus.CONFIRMED: set(),
    OrderStatus.FAILED: {OrderStatus.ROUTING},
}

# Populated together, once, on the CONFIRMED transition only
CONFIRMATION_FIELDS = ("amount_out", "execution_price", "tx_hash")

UPDATABLE_FIELDS = frozenset({
    "selected_provider",
    "amount_out",
    "execution_price",
    "tx_hash",
    "error_message",
    "retry_count",
})


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Check whether ``current -> new`` is a legal lifecycle step"""
    return new in ALLOWED_TRANSITIONS[current]


@dataclass
class Order:
    """
    Order entity tracked through its lifecycle

    The order state store is the only writer; everything else works on
    snapshots of this structure.
    """

    id: str
    order_type: OrderType
    token_in: str
    token_out: str
    amount_in: float
    slippage: float
    status: OrderStatus = OrderStatus.PENDING

    # Optional request terms
    limit_price: Optional[float] = None

    # Set at BUILDING
    selected_provider: Optional[str] = None

    # Set together at CONFIRMED
    amount_out: Optional[float] = None
    execution_price: Optional[float] = None
    tx_hash: Optional[str] = None

    # Set at FAILED
    error_message: Optional[str] = None
    retry_count: int = 0

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @classmethod
    def generate_order_id(cls) -> str:
        """Generate unique order ID"""
        return str(uuid.uuid4())

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert order to dictionary for serialization"""
        return {
            'id': self.id,
            'order_type': self.order_type.value,
            'status': self.status.value,
            'token_in': self.token_in,
            'token_out': self.token_out,
            'amount_in': self.amount_in,
            'amount_out': self.amount_out,
            'slippage': self.slippage,
            'limit_price': self.limit_price,
            'selected_provider': self.selected_provider,
            'execution_price': self.execution_price,
            'tx_hash': self.tx_hash,
            'error_message': self.error_message,
            'retry_count': self.retry_count,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'confirmed_at': _iso(self.confirmed_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Order':
        """Rebuild an order from :meth:`to_dict` output"""
        return cls(
            id=data['id'],
            order_type=OrderType(data['order_type']),
            status=OrderStatus(data['status']),
            token_in=data['token_in'],
            token_out=data['token_out'],
            amount_in=data['amount_in'],
            amount_out=data.get('amount_out'),
            slippage=data['slippage'],
            limit_price=data.get('limit_price'),
            selected_provider=data.get('selected_provider'),
            execution_price=data.get('execution_price'),
            tx_hash=data.get('tx_hash'),
            error_message=data.get('error_message'),
            retry_count=data.get('retry_count', 0),
            created_at=_parse_iso(data.get('created_at')),
            updated_at=_parse_iso(data.get('updated_at')),
            confirmed_at=_parse_iso(data.get('confirmed_at')),
        )

    def __str__(self) -> str:
        return (f"Order({self.short_id}: {self.order_type.value} {self.amount_in} "
                f"{self.token_in}->{self.token_out} - {self.status.value})")


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _number(value: Any, name: str) -> float:
    # bool is an int subclass and never a valid amount
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{name} must be finite")
    return number


@dataclass
class CreateOrderRequest:
    """Validated order creation request"""

    order_type: OrderType
    token_in: str
    token_out: str
    amount_in: float
    slippage: float
    limit_price: Optional[float] = None
    order_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any, default_slippage: float = 0.01) -> 'CreateOrderRequest':
        """
        Validate a raw request body

        Accepts snake_case keys as well as the camelCase keys used by
        browser clients (``orderType``, ``tokenIn``...).

        Raises:
            ValidationError: if any field is missing or out of range
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be a JSON object")

        raw_type = _first(payload, 'order_type', 'orderType')
        if raw_type is None:
            raise ValidationError("order_type is required")
        try:
            order_type = OrderType(str(raw_type).lower())
        except ValueError:
            allowed = ", ".join(t.value for t in OrderType)
            raise ValidationError(f"order_type must be one of: {allowed}")

        tokens = {}
        for name, keys in (('token_in', ('token_in', 'tokenIn')),
                           ('token_out', ('token_out', 'tokenOut'))):
            value = _first(payload, *keys)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} must be a non-empty string")
            tokens[name] = value.strip()

        raw_amount = _first(payload, 'amount_in', 'amountIn')
        if raw_amount is None:
            raise ValidationError("amount_in is required")
        amount_in = _number(raw_amount, 'amount_in')
        if amount_in <= 0:
            raise ValidationError("amount_in must be positive")

        raw_slippage = _first(payload, 'slippage')
        slippage = default_slippage if raw_slippage is None else _number(raw_slippage, 'slippage')
        if not 0.0 <= slippage <= 1.0:
            raise ValidationError("slippage must be between 0 and 1")

        limit_price = None
        raw_limit = _first(payload, 'limit_price', 'limitPrice')
        if raw_limit is not None:
            limit_price = _number(raw_limit, 'limit_price')
            if limit_price <= 0:
                raise ValidationError("limit_price must be positive")

        order_id = _first(payload, 'order_id', 'orderId')
        if order_id is not None and (not isinstance(order_id, str) or not order_id.strip()):
            raise ValidationError("order_id must be a non-empty string")

        return cls(
            order_type=order_type,
            token_in=tokens['token_in'],
            token_out=tokens['token_out'],
            amount_in=amount_in,
            slippage=slippage,
            limit_price=limit_price,
            order_id=order_id.strip() if order_id else None,
        )


@dataclass
class Quote:
    """Candidate execution terms from one provider (never persisted)"""

    provider: str
    price: float                  # Unit price before fees
    amount_out: float             # Output for the requested input, net of fee
    fee: float                    # Fee fraction
    liquidity_depth: float
    estimated_slippage: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider': self.provider,
            'price': self.price,
            'amount_out': self.amount_out,
            'fee': self.fee,
            'liquidity_depth': self.liquidity_depth,
            'estimated_slippage': self.estimated_slippage,
        }


@dataclass
class ExecutionResult:
    """Outcome of one successful execution on a provider"""

    tx_hash: str
    executed_price: float
    amount_out: float
    provider: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tx_hash': self.tx_hash,
            'executed_price': self.executed_price,
            'amount_out': self.amount_out,
            'provider': self.provider,
            'timestamp': _iso(self.timestamp),
        }


@dataclass
class StatusUpdate:
    """Status change event delivered to subscribers (never stored)"""

    order_id: str
    status: OrderStatus
    timestamp: datetime = field(default_factory=utc_now)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        """Wire frame forwarded to stream subscribers"""
        return {
            'type': 'status_update',
            'orderId': self.order_id,
            'status': self.status.value,
            'data': self.data,
            'timestamp': _iso(self.timestamp),
        }


def quotes_to_dicts(quotes: List[Quote]) -> List[Dict[str, Any]]:
    return [quote.to_dict() for quote in quotes]
