"""Exceptions raised by the SBMS collector."""


class SbmsError(Exception):
    """Base exception for SBMS collector errors."""


class MalformedEncoding(ValueError, SbmsError):
    """Encoded value is outside the device alphabet or fails integrity."""


class TransportFailure(ConnectionError, SbmsError):
    """Network or serial I/O with the device failed."""


class ConfigurationError(ValueError, SbmsError):
    """Invalid configuration; fatal at startup."""


class AcquisitionError(SbmsError):
    """Acquisition could not be started (e.g. the first scrape failed)."""
