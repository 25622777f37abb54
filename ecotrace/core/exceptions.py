"""
Domain exceptions

Not-found conditions are returned as None by resolvers and estimate sources;
these exceptions mark faults only.
"""


class EcoTraceError(Exception):
    """Base class for validation engine faults"""

    pass


class GeographicDataError(EcoTraceError):
    """Raised when bulk postal data cannot be fetched or parsed"""

    pass


class EstimateSourceError(EcoTraceError):
    """Raised when an external estimate provider call fails"""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class CircuitBreakerOpenException(EcoTraceError):
    """Exception raised when circuit breaker is open"""

    pass
