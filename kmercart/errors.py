from typing import Optional

from flask import jsonify
from flask_limiter.errors import RateLimitExceeded
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    """An error that maps onto an HTTP status and a JSON message body."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"message": self.message}


class ValidationError(ApiError):
    status_code = 400


class UnauthorizedError(ApiError):
    status_code = 401


class ForbiddenError(ApiError):
    status_code = 403


class NotFoundError(ApiError):
    status_code = 404


class ConflictError(ApiError):
    status_code = 409


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        if error.status_code >= 500:
            app.logger.error("Request failed: %s", error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(error):
        return (
            jsonify({"message": "Too many requests. Please slow down and try again."}),
            429,
        )

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        messages = {
            404: "Resource not found.",
            405: "Method not allowed.",
            413: "Uploaded file is too large.",
        }
        message = messages.get(error.code) or error.description or "Request failed."
        return jsonify({"message": message}), error.code
