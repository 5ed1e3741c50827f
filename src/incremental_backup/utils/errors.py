"""
Exceptions raised by the backup engine.
RunAbort and its subclasses stop a whole run. Everything else is handled per
entity or per artifact and only shows up in the run summary.
"""


class BackupError(Exception):
    """
    Base class for all backup errors.
    """


class RunAbort(BackupError):
    """
    Fatal for the current run. The CLI exits with a non-zero code.
    """


class ConfigError(RunAbort):
    """
    Required settings are missing or invalid.
    """


class GateTimeout(RunAbort):
    """
    The server stayed under high load for longer than the wait budget.
    """


class RunCancelled(RunAbort):
    """
    The run was interrupted by a shutdown signal.
    """


class EnumerationEmpty(RunAbort):
    """
    No entities found to back up.
    """


class StateError(RunAbort):
    """
    The watermark store could not be read or written.
    """


class RunLocked(RunAbort):
    """
    Another run of the same strategy holds the lease.
    """


class ConnectorError(BackupError):
    """
    The database or one of its client tools returned an error.
    """


class DetectionError(BackupError):
    """
    Change detection failed for one entity.
    """


class BuildError(BackupError):
    """
    Creating the artifact for one entity failed.
    """


class TransportError(BackupError):
    """
    A single transfer to remote storage failed.
    """


class UploadFailure(BackupError):
    """
    All upload attempts for an artifact failed.
    """
