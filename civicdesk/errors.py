# Exception hierarchy for the complaint core. The API layer maps each class
# onto an HTTP status in app.py.


class CivicDeskError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ComplaintValidationError(CivicDeskError):
    """Missing or invalid input. Raised before any I/O is attempted."""
    status_code = 400


class ComplaintNotFound(CivicDeskError):
    status_code = 404


class MediaNotFound(CivicDeskError):
    status_code = 404


class ConfirmationRequired(CivicDeskError):
    status_code = 409


class InvalidTransition(CivicDeskError):
    status_code = 409


class FileTooLarge(CivicDeskError):
    status_code = 413

    def __init__(self, name: str, limit_mb: int):
        super().__init__(f"{name} is too large. Max size: {limit_mb}MB")
        self.name = name
        self.limit_mb = limit_mb


class StoreError(CivicDeskError):
    """A document store read, write or subscription failed."""
    status_code = 503


class UploadFailed(CivicDeskError):
    status_code = 502


class AssistantUnavailable(CivicDeskError):
    status_code = 500
