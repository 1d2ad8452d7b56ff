"""
Exception hierarchy for the ingestion pipeline.

Input rejections surface synchronously before a job exists, job-level failures
are recorded on the job, and infrastructure failures are retryable.
"""
from typing import Optional


class IngestionException(Exception):
    """Base class for all ingestion errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InputRejectedException(IngestionException):
    """The uploaded file was rejected before any processing began."""


class UnsupportedFileTypeException(InputRejectedException):
    """Exception raised when an upload does not have an accepted extension."""

    def __init__(self, file_name: str, allowed: Optional[list] = None, message: str = None):
        self.file_name = file_name
        self.allowed = list(allowed or [])
        allowed_text = " or ".join(self.allowed) or "a spreadsheet"
        super().__init__(message or f"Only {allowed_text} files are allowed (got '{file_name}').")


class FileTooLargeException(InputRejectedException):
    """Exception raised when an upload exceeds the configured size limit."""

    def __init__(self, file_name: str, limit_mb: int, message: str = None):
        self.file_name = file_name
        self.limit_mb = limit_mb
        super().__init__(message or f"{file_name} exceeds the {limit_mb}MB upload limit.")


class FileAlreadyImportedException(InputRejectedException):
    """Exception raised when the same file content already has a live or finished job."""

    def __init__(self, file_hash: str, job_id: str, message: str = None):
        self.file_hash = file_hash
        self.job_id = job_id
        super().__init__(message or f"File has already been imported (job {job_id}).")


class SpreadsheetReadException(IngestionException):
    """The spreadsheet could not be opened or is not tabular."""


class JobNotFoundException(IngestionException):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Upload job '{job_id}' not found.")


class JobStateException(IngestionException):
    """The job is not in a state that allows the requested transition."""

    def __init__(self, job_id: str, status: str, message: str = None):
        self.job_id = job_id
        self.status = status
        super().__init__(message or f"Upload job '{job_id}' is already {status}.")


class InvalidMappingException(IngestionException):
    """A user-supplied header mapping references unknown canonical fields."""


class OracleResponseException(IngestionException):
    """The mapping oracle returned a payload that is not a usable mapping."""


class InfrastructureException(IngestionException):
    """A backing store was unavailable. Callers may retry."""

    retryable = True


class MappingCacheUnavailableException(InfrastructureException):
    pass


class JobStoreUnavailableException(InfrastructureException):
    pass
