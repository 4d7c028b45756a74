"""
Domain records shared by the risk, execution and monitoring layers.

Prices, sizes and money are Decimal. Records that cross the persistence
boundary expose to_dict()/from_dict() with Decimals as strings and
datetimes as ISO-8601.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


def to_decimal(value: Any) -> Decimal:
    """Convert floats/ints/strings to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class SignalAction(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class PositionSide(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def direction(self) -> int:
        """+1 for LONG, -1 for SHORT (PnL sign)."""
        return 1 if self is PositionSide.LONG else -1

    @property
    def entry_order_side(self) -> str:
        return "buy" if self is PositionSide.LONG else "sell"

    @property
    def exit_order_side(self) -> str:
        return "sell" if self is PositionSide.LONG else "buy"


class PositionStatus(Enum):
    OPEN = "OPEN"
    PARTIAL_CLOSED = "PARTIAL_CLOSED"
    CLOSED = "CLOSED"


class CloseReason(Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    MANUAL = "MANUAL"
    SIGNAL_REVERSE = "SIGNAL_REVERSE"
    RISK_LIMIT = "RISK_LIMIT"


# ── Signal ───────────────────────────────────────────────────────────────────

@dataclass
class Signal:
    """A proposed trade, produced by the external signal generator."""
    symbol: str
    action: SignalAction
    confidence: float
    stop_loss: Decimal
    take_profits: List[Decimal]
    leverage: int
    entry_price: Optional[Decimal] = None
    entry_range: Optional[Tuple[Decimal, Decimal]] = None
    take_profit_percents: Optional[List[float]] = None
    order_type: str = "market"
    signal_id: str = ""
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"confidence {self.confidence} outside [0, 100]")
        if self.entry_price is None and self.entry_range is None:
            raise ValueError("signal needs an entry price or an entry range")
        if self.take_profit_percents is not None and \
                len(self.take_profit_percents) != len(self.take_profits):
            raise ValueError("take_profit_percents must match take_profits")
        if self.order_type not in ("market", "limit"):
            raise ValueError(f"unsupported order type: {self.order_type}")
        # Targets are realised level by level, so each must lie further into profit
        if self.action is not SignalAction.HOLD:
            direction = 1 if self.action is SignalAction.BUY else -1
            tps = self.take_profits
            if any((b - a) * direction <= 0 for a, b in zip(tps, tps[1:])):
                raise ValueError(f"take_profits {[str(p) for p in tps]} out of order "
                                 f"for {self.action.value}")

    @property
    def entry(self) -> Decimal:
        """Effective entry: the explicit price, else the range midpoint."""
        if self.entry_price is not None:
            return self.entry_price
        low, high = self.entry_range
        return (low + high) / 2

    @property
    def side(self) -> Optional[PositionSide]:
        if self.action is SignalAction.BUY:
            return PositionSide.LONG
        if self.action is SignalAction.SELL:
            return PositionSide.SHORT
        return None

    def target_percents(self) -> List[Decimal]:
        """Per-target size split, equal unless the signal says otherwise."""
        if not self.take_profits:
            return []
        if self.take_profit_percents is not None:
            return [to_decimal(p) for p in self.take_profit_percents]
        return [Decimal("100") / len(self.take_profits)] * len(self.take_profits)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        entry_range = data.get("entry_range")
        entry_price = data.get("entry_price")
        return cls(
            symbol=data["symbol"],
            action=SignalAction(str(data["action"]).upper()),
            confidence=float(data.get("confidence", 0)),
            stop_loss=to_decimal(data["stop_loss"]),
            take_profits=[to_decimal(p) for p in data.get("take_profits", [])],
            leverage=int(data.get("leverage", 1)),
            entry_price=to_decimal(entry_price) if entry_price is not None else None,
            entry_range=(to_decimal(entry_range[0]), to_decimal(entry_range[1]))
            if entry_range else None,
            take_profit_percents=data.get("take_profit_percents"),
            order_type=data.get("order_type", "market"),
            signal_id=data.get("signal_id", ""),
            timestamp=_parse_dt(data["timestamp"]) if data.get("timestamp") else utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action.value,
            "confidence": self.confidence,
            "stop_loss": str(self.stop_loss),
            "take_profits": [str(p) for p in self.take_profits],
            "leverage": self.leverage,
            "entry_price": str(self.entry_price) if self.entry_price is not None else None,
            "entry_range": [str(p) for p in self.entry_range] if self.entry_range else None,
            "take_profit_percents": self.take_profit_percents,
            "order_type": self.order_type,
            "signal_id": self.signal_id,
            "timestamp": self.timestamp.isoformat(),
        }


# ── Position ─────────────────────────────────────────────────────────────────

@dataclass
class TakeProfitTarget:
    level: int
    price: Decimal
    size_percent: Decimal
    filled: bool = False
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level, "price": str(self.price),
                "size_percent": str(self.size_percent),
                "filled": self.filled, "order_id": self.order_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TakeProfitTarget":
        return cls(level=int(data["level"]), price=to_decimal(data["price"]),
                   size_percent=to_decimal(data["size_percent"]),
                   filled=bool(data.get("filled", False)),
                   order_id=data.get("order_id"))


@dataclass
class Position:
    """An open leveraged exposure. Written only by the ExecutionEngine."""
    id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal
    size: Decimal
    remaining_size: Decimal
    leverage: int
    stop_loss: Decimal
    take_profits: List[TakeProfitTarget] = field(default_factory=list)
    status: PositionStatus = PositionStatus.OPEN
    open_time: datetime = field(default_factory=utc_now)
    signal_id: str = ""
    ai_confidence: float = 0.0
    initial_margin: Decimal = Decimal("0")

    # Trailing-stop and protective-order bookkeeping
    best_price: Optional[Decimal] = None
    trailing_active: bool = False
    entry_order_id: Optional[str] = None
    stop_order_id: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status is PositionStatus.CLOSED

    def unfilled_targets(self) -> List[TakeProfitTarget]:
        return sorted((t for t in self.take_profits if not t.filled), key=lambda t: t.level)

    def target(self, level: int) -> Optional[TakeProfitTarget]:
        for t in self.take_profits:
            if t.level == level:
                return t
        return None

    def stop_triggered(self, price: Decimal) -> bool:
        if self.side is PositionSide.LONG:
            return price <= self.stop_loss
        return price >= self.stop_loss

    def target_triggered(self, target: TakeProfitTarget, price: Decimal) -> bool:
        if self.side is PositionSide.LONG:
            return price >= target.price
        return price <= target.price

    def is_tighter_stop(self, candidate: Decimal) -> bool:
        """True when candidate moves the stop in the profit-protecting direction."""
        if self.side is PositionSide.LONG:
            return candidate > self.stop_loss
        return candidate < self.stop_loss

    def unrealized_pnl(self, price: Decimal) -> Decimal:
        return (price - self.entry_price) * self.remaining_size * self.side.direction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_price": str(self.entry_price),
            "size": str(self.size),
            "remaining_size": str(self.remaining_size),
            "leverage": self.leverage,
            "stop_loss": str(self.stop_loss),
            "take_profits": [t.to_dict() for t in self.take_profits],
            "status": self.status.value,
            "open_time": self.open_time.isoformat(),
            "signal_id": self.signal_id,
            "ai_confidence": self.ai_confidence,
            "initial_margin": str(self.initial_margin),
            "best_price": str(self.best_price) if self.best_price is not None else None,
            "trailing_active": self.trailing_active,
            "entry_order_id": self.entry_order_id,
            "stop_order_id": self.stop_order_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        best = data.get("best_price")
        return cls(
            id=data["id"],
            symbol=data["symbol"],
            side=PositionSide(data["side"]),
            entry_price=to_decimal(data["entry_price"]),
            size=to_decimal(data["size"]),
            remaining_size=to_decimal(data["remaining_size"]),
            leverage=int(data["leverage"]),
            stop_loss=to_decimal(data["stop_loss"]),
            take_profits=[TakeProfitTarget.from_dict(t) for t in data.get("take_profits", [])],
            status=PositionStatus(data["status"]),
            open_time=_parse_dt(data["open_time"]),
            signal_id=data.get("signal_id", ""),
            ai_confidence=float(data.get("ai_confidence", 0.0)),
            initial_margin=to_decimal(data.get("initial_margin", "0")),
            best_price=to_decimal(best) if best is not None else None,
            trailing_active=bool(data.get("trailing_active", False)),
            entry_order_id=data.get("entry_order_id"),
            stop_order_id=data.get("stop_order_id"),
        )


# ── History ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TradeHistory:
    """Immutable record of one realised exit (full or partial)."""
    position_id: str
    symbol: str
    side: PositionSide
    entry_price: Decimal
    exit_price: Decimal
    entry_time: datetime
    exit_time: datetime
    close_reason: CloseReason
    size: Decimal
    pnl: Decimal
    pnl_percent: float
    fees: Decimal
    holding_time: float  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_price": str(self.entry_price),
            "exit_price": str(self.exit_price),
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat(),
            "close_reason": self.close_reason.value,
            "size": str(self.size),
            "pnl": str(self.pnl),
            "pnl_percent": self.pnl_percent,
            "fees": str(self.fees),
            "holding_time": self.holding_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeHistory":
        return cls(
            position_id=data["position_id"],
            symbol=data["symbol"],
            side=PositionSide(data["side"]),
            entry_price=to_decimal(data["entry_price"]),
            exit_price=to_decimal(data["exit_price"]),
            entry_time=_parse_dt(data["entry_time"]),
            exit_time=_parse_dt(data["exit_time"]),
            close_reason=CloseReason(data["close_reason"]),
            size=to_decimal(data["size"]),
            pnl=to_decimal(data["pnl"]),
            pnl_percent=float(data["pnl_percent"]),
            fees=to_decimal(data["fees"]),
            holding_time=float(data["holding_time"]),
        )


@dataclass
class DailyStats:
    """Aggregate over one UTC day of TradeHistory. Derived, never authoritative."""
    day: date
    trades: int = 0
    wins: int = 0
    losses: int = 0
    realized_pnl: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")

    @classmethod
    def from_history(cls, records: Iterable[TradeHistory], day: date) -> "DailyStats":
        stats = cls(day=day)
        for rec in records:
            if rec.exit_time.astimezone(timezone.utc).date() != day:
                continue
            stats.add(rec)
        return stats

    def add(self, rec: TradeHistory) -> None:
        self.trades += 1
        if rec.pnl > 0:
            self.wins += 1
        elif rec.pnl < 0:
            self.losses += 1
        self.realized_pnl += rec.pnl
        self.fees += rec.fees


# ── Exchange records ─────────────────────────────────────────────────────────

@dataclass
class Order:
    """Normalised exchange order."""
    id: str
    symbol: str
    side: str
    type: str
    price: Decimal
    amount: Decimal
    filled: Decimal
    remaining: Decimal
    status: str
    timestamp: int

    @property
    def is_filled(self) -> bool:
        return self.status == "closed" or (self.amount > 0 and self.remaining <= 0)


@dataclass
class Balance:
    currency: str
    free: Decimal
    used: Decimal
    total: Decimal


@dataclass
class ExchangePosition:
    symbol: str
    side: str
    contracts: Decimal
    entry_price: Decimal
    mark_price: Decimal
    unrealized_pnl: Decimal
    leverage: int
    liquidation_price: Optional[Decimal] = None


# ── Decisions / results ──────────────────────────────────────────────────────

@dataclass
class RiskDecision:
    allowed: bool
    reason: Optional[str] = None
    adjusted_size: Optional[Decimal] = None


@dataclass
class ExecutionResult:
    success: bool
    position: Optional[Position] = None
    reason: Optional[str] = None
