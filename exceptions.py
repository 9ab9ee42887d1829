"""
Exceptions used throughout hopwatch.
"""


class DiscoveryError(Exception):
    """Raised when the trace utility cannot be launched, read, or exits without producing hops"""
    pass
