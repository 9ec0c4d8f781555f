# errors.py


class AppError(Exception):
    status = 500

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class BadRequest(AppError):
    status = 400


class NotFound(AppError):
    status = 404


class UpstreamError(AppError):
    """A provider answered with a non-2xx status or could not be reached."""
    status = 500


class UpstreamAuthError(UpstreamError):
    pass


class BucketNotFound(UpstreamError):
    pass


class UploadRejected(UpstreamError):
    pass


class ExtractionError(AppError):
    """The generation provider returned nothing that looks like an image URL."""
    status = 500
