"""
SpecVerse — Application Errors
Domain modules raise AppError; the server turns it into {"detail": ...} with the status code.
"""


class AppError(Exception):
    def __init__(self, status_code: int, message: str, details=None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"detail": self.message}
        if self.details is not None:
            body["errors"] = self.details
        return body


def bad_request(message: str, details=None) -> AppError:
    return AppError(400, message, details)

def forbidden(message: str = "Permission denied") -> AppError:
    return AppError(403, message)

def not_found(what: str = "Resource") -> AppError:
    return AppError(404, f"{what} not found")

def conflict(message: str) -> AppError:
    return AppError(409, message)

def gone(message: str) -> AppError:
    return AppError(410, message)
