import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("backstage.errors")


class BackstageError(Exception):
    status_code = 500

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class RequestInvalid(BackstageError):
    status_code = 400


class NotFound(BackstageError):
    status_code = 404


class NoDocuments(NotFound):
    pass


class ModelProviderError(BackstageError):
    pass


class TimelineParseError(ModelProviderError):
    def __init__(self, details=None):
        super().__init__("Failed to parse AI response", details)


class StorageError(BackstageError):
    pass


class ObjectExists(StorageError):
    pass


class ObjectMissing(StorageError):
    pass


def error_body(message: str, details=None) -> dict:
    body = {"error": message}
    if details is not None:
        body["details"] = details
    return body


def _field_name(loc) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header", "form")]
    return ".".join(parts) or "request"


def register_error_handlers(app: FastAPI):
    @app.exception_handler(BackstageError)
    async def backstage_error(request: Request, exc: BackstageError):
        return JSONResponse(error_body(exc.message, exc.details), status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(error_body(str(exc.detail)), status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = _field_name(errors[0]["loc"]) if errors else "request"
        details = [{"field": _field_name(e["loc"]), "message": e["msg"]} for e in errors]
        return JSONResponse(error_body(f"Invalid value for field '{field}'", details), status_code=400)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(error_body("Internal server error"), status_code=500)
