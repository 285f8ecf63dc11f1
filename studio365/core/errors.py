import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from studio365.core.exceptions import ConfigurationError, Studio365Exception

logger = logging.getLogger("studio365.errors")


def register_error_handlers(app):
    @app.exception_handler(Studio365Exception)
    async def studio365_exception(request: Request, exc: Studio365Exception):
        if isinstance(exc, ConfigurationError):
            logger.critical(
                "Fatal configuration error code=%s parameter=%s reason=%s path=%s",
                exc.code,
                exc.details.get("parameter"),
                exc.reason,
                request.url.path,
            )
        elif exc.status_code >= 500:
            logger.error("Request failed code=%s path=%s", exc.code, request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception):  # noqa: BLE001
        correlation_id = uuid.uuid4().hex
        logger.exception("Unhandled error cid=%s path=%s method=%s", correlation_id, request.url.path, request.method)
        return JSONResponse(status_code=500, content={"detail": "Internal server error", "cid": correlation_id})

    return app
