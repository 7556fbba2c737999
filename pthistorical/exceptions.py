"""
Defines custom exceptions used throughout the package.

These exceptions allow callers to tell fatal lifecycle failures apart from
recoverable ones without inspecting messages.
"""

from typing import Optional


class HistoricalJobError(Exception):
    """Base class for every error raised by this package."""
    pass

class ConfigurationError(HistoricalJobError):
    """A config, job description or rules file is missing or invalid."""
    pass

class TransportError(HistoricalJobError):
    """The REST transport could not complete a request."""
    pass

class JobSubmissionError(HistoricalJobError):
    """The job could not be created on the server. Always fatal."""
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ''):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

class AcceptanceError(HistoricalJobError):
    """An accept or reject request was refused. The job stays quoted and may be retried."""
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ''):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

class JobStatusUnknownError(HistoricalJobError):
    """The job status payload could not be classified."""
    def __init__(self, message: str, raw_body: str = ''):
        super().__init__(message)
        self.raw_body = raw_body

class OrchestrationCancelled(HistoricalJobError):
    """A cancel signal interrupted a lifecycle wait."""
    pass

class ManifestError(HistoricalJobError):
    """The result manifest could not be fetched or has no usable URL list."""
    pass

class FilenameDerivationError(HistoricalJobError):
    """A download URL cannot be mapped to a local file name."""
    pass
