"""
Risk Engine
Gates trade signals against account limits and sizes positions
"""
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from loguru import logger

from config import RiskConfig
from models import Position, RiskDecision, Signal, SignalAction

SIZE_QUANTUM = Decimal("1e-12")


class RiskRejection(Enum):
    """Why a signal was vetoed."""
    BELOW_MIN_BALANCE = "BELOW_MIN_BALANCE"
    MAX_POSITIONS_REACHED = "MAX_POSITIONS_REACHED"
    LEVERAGE_NOT_ALLOWED = "LEVERAGE_NOT_ALLOWED"
    DAILY_LOSS_LIMIT_HIT = "DAILY_LOSS_LIMIT_HIT"
    INVALID_STOP_DISTANCE = "INVALID_STOP_DISTANCE"


class RiskEngine:
    """
    Pre-trade risk evaluation.

    Enforces, in order:
    - Minimum account balance
    - Maximum concurrent positions
    - Allowed leverage set
    - Daily loss circuit breaker (absolute veto for the rest of the day)
    - Fixed-fractional position sizing from the stop distance

    Pure: the result depends only on the arguments and the immutable config.
    """

    def __init__(self, config: Optional[RiskConfig] = None):
        """
        Initialize risk engine.

        Args:
            config: Risk limits configuration
        """
        self.config = config or RiskConfig()
        logger.info(
            f"Initialized Risk Engine: "
            f"risk/trade={self.config.max_position_size_percent}%, "
            f"daily_loss={self.config.max_daily_loss_percent}%, "
            f"max_positions={self.config.max_open_positions}, "
            f"leverage={sorted(self.config.allowed_leverage)}"
        )

    def evaluate(
            self,
            signal: Signal,
            current_balance: Decimal,
            open_positions: Sequence[Position],
            daily_realized_pnl: Decimal,
    ) -> RiskDecision:
        """
        Evaluate a candidate signal.

        Args:
            signal: BUY or SELL signal (HOLD never reaches this point)
            current_balance: Account balance in quote currency
            open_positions: Positions currently open
            daily_realized_pnl: Realised PnL for the current UTC day

        Returns:
            RiskDecision with adjusted_size set when allowed
        """
        if signal.action is SignalAction.HOLD:
            raise ValueError("HOLD signals are not evaluated")

        cfg = self.config

        if current_balance < cfg.min_account_balance:
            return self._reject(RiskRejection.BELOW_MIN_BALANCE,
                                f"balance {current_balance} < {cfg.min_account_balance}")

        if len(open_positions) >= cfg.max_open_positions:
            return self._reject(RiskRejection.MAX_POSITIONS_REACHED,
                                f"{len(open_positions)}/{cfg.max_open_positions} open")

        if signal.leverage not in cfg.allowed_leverage:
            return self._reject(RiskRejection.LEVERAGE_NOT_ALLOWED,
                                f"{signal.leverage}x not in {sorted(cfg.allowed_leverage)}")

        if self.daily_loss_limit_hit(current_balance, daily_realized_pnl):
            return self._reject(RiskRejection.DAILY_LOSS_LIMIT_HIT,
                                f"daily pnl {daily_realized_pnl} breaches "
                                f"{cfg.max_daily_loss_percent}% of {current_balance}")

        size = self.calculate_position_size(signal, current_balance)
        if size is None:
            return self._reject(RiskRejection.INVALID_STOP_DISTANCE,
                                f"entry={signal.entry} stop={signal.stop_loss} "
                                f"action={signal.action.value}")

        logger.info(f"Risk approved {signal.symbol} {signal.action.value}: "
                    f"size={size:.6f} (risk ${self.max_risk_amount(current_balance):.2f})")
        return RiskDecision(allowed=True, adjusted_size=size)

    def max_risk_amount(self, current_balance: Decimal) -> Decimal:
        return current_balance * self.config.max_position_size_percent / Decimal("100")

    def calculate_position_size(self, signal: Signal,
                                current_balance: Decimal) -> Optional[Decimal]:
        """
        Size so that a stop-out loses at most max_position_size_percent of balance.

        Returns:
            Position size in base units, or None if the stop distance is invalid
        """
        entry, stop = signal.entry, signal.stop_loss
        risk_per_unit = abs(entry - stop)
        if risk_per_unit == 0:
            return None
        # A stop on the wrong side of entry would never protect the position
        if signal.action is SignalAction.BUY and stop > entry:
            return None
        if signal.action is SignalAction.SELL and stop < entry:
            return None
        size = self.max_risk_amount(current_balance) / risk_per_unit
        # Round down so the stop-out loss can never exceed the budget
        return size.quantize(SIZE_QUANTUM, rounding=ROUND_DOWN)

    def daily_loss_limit_hit(self, current_balance: Decimal,
                             daily_realized_pnl: Decimal) -> bool:
        """Circuit breaker: cumulative realised loss today reached the limit."""
        limit = current_balance * self.config.max_daily_loss_percent / Decimal("100")
        return -daily_realized_pnl >= limit

    def get_risk_summary(self, current_balance: Decimal, open_positions: Sequence[Position],
                         daily_realized_pnl: Decimal) -> Dict[str, Any]:
        """Get comprehensive risk summary."""
        cfg = self.config
        loss_limit = current_balance * cfg.max_daily_loss_percent / Decimal("100")
        return {
            "balance": float(current_balance),
            "positions": {
                "count": len(open_positions),
                "max_allowed": cfg.max_open_positions,
            },
            "pnl": {
                "daily": float(daily_realized_pnl),
                "daily_loss_limit": float(loss_limit),
                "breaker_tripped": self.daily_loss_limit_hit(current_balance, daily_realized_pnl),
            },
            "max_risk_per_trade": float(self.max_risk_amount(current_balance)),
            "allowed_leverage": sorted(cfg.allowed_leverage),
        }

    @staticmethod
    def _reject(reason: RiskRejection, detail: str) -> RiskDecision:
        logger.warning(f"Rejected by risk engine: {reason.value} ({detail})")
        return RiskDecision(allowed=False, reason=reason.value)
