class AcquisitionError(Exception):
    """Base class for failures the pipeline knows how to classify."""

    public_message = "Acquisition failed"

    def __init__(self, message, *, public_message=None):
        super().__init__(message)
        if public_message:
            self.public_message = public_message


class ConfigurationError(AcquisitionError):
    """Operator-actionable problem: fails fast, never consumes job retries."""

    def __init__(self, message):
        super().__init__(message, public_message=message)


class ExternalServiceError(AcquisitionError):
    public_message = "External service unavailable"


class ResponseTooLarge(ExternalServiceError):
    public_message = "External service returned an oversized response"


class PermanentJobError(AcquisitionError):
    """Raised by a processor when retrying the same job cannot help."""


class DownloadLocationsExhausted(PermanentJobError):
    public_message = "All download locations failed"


class InvalidTransition(AcquisitionError):
    def __init__(self, request_id, from_status, to_status):
        super().__init__(f"request {request_id}: illegal transition {from_status} -> {to_status}")
        self.request_id = request_id
        self.from_status = from_status
        self.to_status = to_status


class StaleRequestState(AcquisitionError):
    def __init__(self, request_id, to_status):
        super().__init__(f"request {request_id}: status changed before transition to {to_status}")
        self.request_id = request_id
        self.to_status = to_status
