"""
Exception taxonomy for the occupancy service.

- TransportError:       switch unreachable / timed out (isolated per switch)
- MalformedReplyError:  one SNMP value had an unexpected shape (skipped)
- ConfigurationError:   bad or missing site/switch/global settings (rejected)
- InternalError:        anything unexpected, caught at the site-cycle boundary
"""


class OccupancyError(Exception):
    """Base class for all errors raised by this package."""


class TransportError(OccupancyError):
    """Raised when SNMP retrieval from a switch fails."""


class MalformedReplyError(OccupancyError):
    """Raised when a single OID value cannot be decoded."""


class ConfigurationError(OccupancyError):
    """Raised when a site, switch or global setting is missing or invalid."""


class InternalError(OccupancyError):
    """Wraps an unexpected failure inside a site poll cycle."""
