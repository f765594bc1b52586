"""
Error types for GROVE

Every failure the server can report to a client derives from GroveError so
request handlers can translate them into responses in one place.
"""


class GroveError(Exception):
    """Base class for all GROVE errors"""


class NotFoundError(GroveError):
    """Requested path has no match in the served tree"""


class UnreadableDirectoryError(GroveError):
    """A directory exists but its entries cannot be enumerated"""


class FileIOError(GroveError):
    """Read or write failure while transferring file content"""


class ConfigurationError(GroveError):
    """Invalid configuration, at startup or for a single request"""


class UploadsDisabledError(ConfigurationError):
    """An upload was attempted while uploads are turned off"""

    def __init__(self, message: str = "uploads are disabled"):
        super().__init__(message)


class InvalidFilenameError(GroveError):
    """Upload file name cannot be turned into a safe stored name"""
