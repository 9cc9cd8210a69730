from typing import Optional


class LofiRadioError(Exception):
    pass


# Track-scoped: the pipeline drops the track and moves on.

class CatalogUnavailable(LofiRadioError):
    def __init__(self, source: str, reason: str = ""):
        self.source = source
        self.reason = reason
        message = f"Catalog unavailable: {source}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class FetchFailed(LofiRadioError):
    def __init__(self, identifier: str, attempts: int = 0, cause: Optional[BaseException] = None):
        self.identifier = identifier
        self.attempts = attempts
        self.cause = cause
        message = f"Fetch failed for {identifier}"
        if attempts:
            message += f" after {attempts} attempt(s)"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class FetchCancelled(LofiRadioError):
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Fetch cancelled for {identifier}")


class DecodeFailed(LofiRadioError):
    def __init__(self, identifier: str, reason: str = ""):
        self.identifier = identifier
        self.reason = reason
        message = f"Decode failed for {identifier}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


TRACK_ERRORS = (CatalogUnavailable, FetchFailed, DecodeFailed)


# Process-fatal.

class OutputDeviceError(LofiRadioError):
    pass


class StartupError(LofiRadioError):
    pass
