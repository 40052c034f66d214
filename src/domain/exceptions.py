class CrawlerException(Exception):
    """Base exception for all crawler-related errors."""
    pass

class SearchBackendError(CrawlerException):
    """Raised when a search request fails at the transport, HTTP or GraphQL level."""
    pass

class DatabaseException(CrawlerException):
    """Raised when a database operation fails. The driver error is kept as __cause__."""
    pass

class CheckoutException(CrawlerException):
    """Raised when a repository cannot be cloned into a local working copy."""
    pass

class ConfigDecodeException(CrawlerException):
    """Raised when a configuration file cannot be read or decoded."""
    def __init__(self, source: str, reason: str):
        self.source = source
        super().__init__(f"Could not decode {source}: {reason}")
