from peltier.strategies.base import ControlStrategy, StrategyKind, create_strategy

__all__ = ["ControlStrategy", "StrategyKind", "create_strategy"]
