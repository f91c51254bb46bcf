class ReducerError(Exception):
    """Base error for the project."""

class ConfigurationError(ReducerError):
    pass

class ScanError(ReducerError):
    """An entry that could not be read while scanning the source tree."""

class ProcessingError(ReducerError):
    pass

class UnsupportedFormatError(ProcessingError):
    """The source format has no re-encoding; callers fall back to a copy."""

class MetadataCorruptionError(ReducerError):
    pass
