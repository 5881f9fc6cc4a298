"""TradeGuard — order validation consensus and settlement for P2P trades."""

__version__ = "0.1.0"
