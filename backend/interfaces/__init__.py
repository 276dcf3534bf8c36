from .market_data import PositionProvider, PriceSource

__all__ = ["PositionProvider", "PriceSource"]
