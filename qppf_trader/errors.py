"""
Exception types shared across the data clients and the trading loop.

Degenerate inputs and risk-policy violations never raise; only upstream
failures (market data, options flow, broker) surface as exceptions.
"""


class QPPFError(Exception):
    """Base class for all errors raised by this package"""


class UpstreamUnavailableError(QPPFError):
    """An external provider could not be reached or returned unusable data"""

    def __init__(self, source: str, message: str = ""):
        self.source = source
        self.message = message or f"{source} unavailable"
        super().__init__(self.message)


class CircuitOpenError(UpstreamUnavailableError):
    """Call short-circuited because the provider's breaker is open"""

    def __init__(self, source: str):
        super().__init__(source, f"{source} circuit open - call skipped")


class NotAuthenticatedError(QPPFError):
    """Broker call attempted before login()"""
