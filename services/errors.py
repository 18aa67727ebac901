"""Exceptions shared by the quote sources and the options pipeline."""


class UpstreamFetchError(Exception):
    """Raised when the market-data provider cannot supply usable data for a symbol."""

    def __init__(self, symbol: str, message: str) -> None:
        self.symbol = symbol
        super().__init__(f"{symbol}: {message}")


class AggregationError(Exception):
    """Raised when a view cannot be produced at all."""

    def __init__(self, view: str, message: str) -> None:
        self.view = view
        super().__init__(message)


__all__ = ["UpstreamFetchError", "AggregationError"]
