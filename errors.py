"""Exception taxonomy shared by the ingest, analytics, alerting and storage layers."""


class MarketWatcherError(Exception):
    pass


class InvalidTickError(MarketWatcherError):
    """Malformed or non-positive tick; rejected before any window update."""

    def __init__(self, message: str, symbol: str = None, time=None):
        super().__init__(message)
        self.symbol = symbol
        self.time = time


class DuplicateTickError(InvalidTickError):
    """A tick with the same (symbol, time) key was already applied."""


class StaleTickError(MarketWatcherError):
    """Tick is older than the symbol's out-of-order tolerance."""

    def __init__(self, message: str, symbol: str = None, time=None, lag_s: float = 0.0):
        super().__init__(message)
        self.symbol = symbol
        self.time = time
        self.lag_s = lag_s


class PersistenceError(MarketWatcherError):
    pass


class NotFoundError(MarketWatcherError):
    """Replay range or alert is not covered by retained durable data."""


class ConfigurationError(MarketWatcherError):
    pass
