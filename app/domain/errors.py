"""
Service-level errors mapped to HTTP responses by the API layer.
"""


class ServiceError(Exception):
    """Base class for errors the API reports to the client."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class InvalidConfigError(ServiceError):
    status_code = 422


class EndpointUnauthorizedError(ServiceError):
    status_code = 401


class EndpointDisabledError(ServiceError):
    status_code = 403
