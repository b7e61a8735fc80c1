from fastapi import status


class PipelineError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, status_code: int = None, details=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class RejectionError(PipelineError):
    """Malformed, unsigned or unverifiable input. Raised before any write."""
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(PipelineError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(PipelineError):
    status_code = status.HTTP_409_CONFLICT


class ConfigurationError(PipelineError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class MaterializationError(PipelineError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ProvisioningError(PipelineError):
    status_code = status.HTTP_400_BAD_REQUEST


class CourierError(Exception):
    """Transport or protocol failure talking to the courier aggregator."""

    def __init__(self, message: str, payload=None):
        super().__init__(message)
        self.payload = payload
