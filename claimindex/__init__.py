"""Provider lookup, caching and query-result assembly for content claims."""

__version__ = "0.1.0"

__all__ = [
    "legacy",
    "model",
    "providercacher",
    "providerindex",
    "queryresult",
    "remotesyncer",
]