"""
Exception hierarchy for the Snapshot Comparer.

Fatal problems detected before any comparison runs derive from
InvalidInputError and end the run with the invalid-input status.
Problems reading one particular save file derive from SaveFileError
or ChunkDecodeError and only mark the affected file pair inconsistent.
"""

from typing import List, Optional


class InvalidInputError(Exception):
    """Raised when the run cannot start because its input is invalid."""
    pass


class ConfigError(InvalidInputError):
    """Raised when command line arguments or the config file are invalid."""
    pass


class SnapshotValidationError(InvalidInputError):
    """Raised when a snapshot is missing, ambiguous or incomplete."""
    pass


class PlanValidationError(InvalidInputError):
    """
    Raised when a partition plan cannot be built.

    Attributes:
        problems: One message per failing table
    """

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = list(problems or [])


class RemoteFetchError(InvalidInputError):
    """Raised when snapshot files cannot be fetched from a remote host."""
    pass


class SaveFileError(IOError):
    """Raised when a table save file is corrupt, truncated or incomplete."""
    pass


class ChunkDecodeError(Exception):
    """Raised when a chunk payload cannot be decoded into rows."""
    pass
