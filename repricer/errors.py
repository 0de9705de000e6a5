# repricer/errors.py


class RepricerError(Exception):
    """Base class for every error raised by the re-pricing engine."""


class FetchFailure(RepricerError):
    """A single price fetch failed (network, timeout, selector miss)."""


class PersistenceFailure(RepricerError):
    """A write to the document store did not land."""


class StreamFailure(RepricerError):
    """The trigger subscription stream broke at the transport level."""


class ConfigurationFailure(RepricerError):
    """Startup cannot continue: missing settings or unreachable store."""
