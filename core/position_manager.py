"""
Position Management: Exit Logic for Stops, Take-Profit Tiers and Sideways Markets

Pure transition `(Position, MarketTick) -> (Position, [PositionAction])`.
No I/O happens here: the lifecycle engine executes the returned actions and
only commits the new position state once they succeed.

Exit precedence per tick (first match wins):
1. sideways_timeout     age > max hold and |move| < minimum progress
2. sideways_detected    age > reallocate-after, volume fading, range tight
3. whale_distribution   only while the trailing stop is active
4. trailing_stop        price <= trailing stop (only if active)
5. stop_loss            price <= static stop
6. take-profit tiers    partial sells, ascending, each at most once
7. volume_decline       volume spike ratio below the exit threshold
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from core.models import ActionType, ExitReason, MarketTick, Position, PositionAction, TrailingStop
from core.risk import accelerated_callback
from infra.config import AccelerationStep, PolicyConfig

logger = logging.getLogger(__name__)

QUANTITY_EPSILON = 1e-12


@dataclass
class ExitRules:
    max_holding_seconds: float = 1800.0
    minimum_progress_pct: float = 5.0
    reallocate_after_seconds: float = 900.0
    sideways_volume_decline_pct: float = 30.0
    price_range_threshold_pct: float = 2.0
    volume_decline_exit_pct: float = 40.0
    trailing_activation_pct: Optional[float] = None
    acceleration: Sequence[AccelerationStep] = field(default_factory=list)

    @classmethod
    def from_policy(cls, policy: PolicyConfig) -> "ExitRules":
        return cls(
            max_holding_seconds=policy.sideways.max_holding_seconds,
            minimum_progress_pct=policy.sideways.minimum_progress_pct,
            reallocate_after_seconds=policy.sideways.reallocate_after_seconds,
            sideways_volume_decline_pct=policy.sideways.volume_decline_threshold_pct,
            price_range_threshold_pct=policy.sideways.price_range_threshold_pct,
            volume_decline_exit_pct=policy.exit_triggers.volume_decline_pct,
            trailing_activation_pct=policy.trailing_stop.activation_pct,
            acceleration=list(policy.trailing_stop.acceleration),
        )


def _full_exit(position: Position, price: float, reason: ExitReason) -> PositionAction:
    return PositionAction(type=ActionType.FULL_EXIT, quantity=position.remaining_quantity, price=price, reason=reason)


def _trailing_callback(position: Position, reference_price: float, rules: ExitRules) -> float:
    trailing = position.trailing_stop
    return accelerated_callback(
        trailing.callback_pct,
        position.pnl_pct(reference_price),
        rules.acceleration,
        trailing.min_callback_pct or 0.0,
    )


def _activate_trailing(position: Position, price: float, rules: ExitRules) -> PositionAction:
    trailing: TrailingStop = position.trailing_stop
    trailing.active = True
    trailing.highest_price = price
    trailing.current_stop = price * (1 - _trailing_callback(position, price, rules) / 100)
    return PositionAction(type=ActionType.ACTIVATE_TRAILING, price=trailing.current_stop)


def evaluate_tick(position: Position, tick: MarketTick, rules: ExitRules) -> Tuple[Position, List[PositionAction]]:
    """
    Apply one market observation to a position.

    Returns:
        (updated copy of the position, actions to execute in order)
    """
    pos = position.copy()
    actions: List[PositionAction] = []
    price = tick.price
    if not pos.is_open or pos.remaining_quantity <= QUANTITY_EPSILON or price <= 0:
        return pos, actions

    age = pos.age_seconds(tick.timestamp)
    move_pct = pos.pnl_pct(price)
    trailing = pos.trailing_stop

    # 1. Sideways timeout
    if age > rules.max_holding_seconds and abs(move_pct) < rules.minimum_progress_pct:
        return pos, [_full_exit(pos, price, ExitReason.SIDEWAYS_TIMEOUT)]

    # 2. Sideways reallocation
    if (
        age > rules.reallocate_after_seconds
        and tick.volume_spike_ratio is not None
        and tick.price_range_pct is not None
        and tick.volume_spike_ratio < 1 - rules.sideways_volume_decline_pct / 100
        and tick.price_range_pct < rules.price_range_threshold_pct
    ):
        return pos, [_full_exit(pos, price, ExitReason.SIDEWAYS_DETECTED)]

    # 3. Whale distribution
    if trailing.active and tick.whale_distribution:
        return pos, [_full_exit(pos, price, ExitReason.WHALE_DISTRIBUTION)]

    # 4. Trailing stop (ratchets up, never loosens)
    if trailing.active:
        if price <= trailing.current_stop:
            return pos, [_full_exit(pos, price, ExitReason.TRAILING_STOP)]
        if price > trailing.highest_price:
            trailing.highest_price = price
            new_stop = price * (1 - _trailing_callback(pos, price, rules) / 100)
            if new_stop > trailing.current_stop:
                trailing.current_stop = new_stop
                actions.append(PositionAction(type=ActionType.RAISE_TRAILING, price=new_stop))

    # 5. Static stop loss
    if price <= pos.stop_loss:
        return pos, actions + [_full_exit(pos, price, ExitReason.STOP_LOSS)]

    # 6. Take-profit tiers, ascending by price
    final_index = len(pos.take_profit_levels) - 1
    for index, level in enumerate(pos.take_profit_levels):
        if level.hit or price < level.price:
            continue
        quantity = min(pos.quantity * level.size_fraction, pos.remaining_quantity)
        level.hit = True
        pos.remaining_quantity = max(0.0, pos.remaining_quantity - quantity)
        actions.append(
            PositionAction(
                type=ActionType.PARTIAL_EXIT,
                quantity=quantity,
                price=price,
                reason=ExitReason.TAKE_PROFIT,
                level_index=index,
            )
        )
        if index == final_index and not trailing.active:
            actions.append(_activate_trailing(pos, price, rules))

    if (
        not trailing.active
        and rules.trailing_activation_pct is not None
        and move_pct >= rules.trailing_activation_pct
    ):
        actions.append(_activate_trailing(pos, price, rules))

    if pos.remaining_quantity <= QUANTITY_EPSILON:
        pos.remaining_quantity = 0.0
        return pos, actions + [_full_exit(pos, price, ExitReason.TAKE_PROFIT)]

    # 7. Volume decline
    if tick.volume_spike_ratio is not None and tick.volume_spike_ratio < 1 - rules.volume_decline_exit_pct / 100:
        return pos, actions + [_full_exit(pos, price, ExitReason.VOLUME_DECLINE)]

    return pos, actions


class PositionManager:
    """
    Stateless wrapper around evaluate_tick that logs exit decisions.

    Responsibilities:
    - Hold the exit rules derived from policy.yaml
    - Evaluate one position against one tick
    """

    def __init__(self, rules: ExitRules):
        self.rules = rules
        logger.info(
            f"PositionManager initialized: max_hold={rules.max_holding_seconds:.0f}s, "
            f"reallocate_after={rules.reallocate_after_seconds:.0f}s, "
            f"trailing_activation={rules.trailing_activation_pct}"
        )

    def evaluate(self, position: Position, tick: MarketTick) -> Tuple[Position, List[PositionAction]]:
        updated, actions = evaluate_tick(position, tick, self.rules)
        for action in actions:
            if action.type == ActionType.FULL_EXIT:
                logger.info(
                    f"EXIT SIGNAL: {position.symbol} reason={action.reason.value} "
                    f"price={tick.price:.6g} pnl={position.pnl_pct(tick.price):+.2f}%"
                )
            elif action.type == ActionType.PARTIAL_EXIT:
                logger.info(
                    f"TAKE PROFIT: {position.symbol} tier {action.level_index + 1} "
                    f"qty={action.quantity:.6g} @ {tick.price:.6g}"
                )
            elif action.type == ActionType.ACTIVATE_TRAILING:
                logger.info(f"TRAILING ACTIVE: {position.symbol} stop={action.price:.6g}")
        return updated, actions
