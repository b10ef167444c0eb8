"""Exception handlers — typed core failures → HTTP responses.

Learn: Services never raise HTTPException; they raise TesseraError
subclasses with a `kind`. One handler maps kind → status, so the HTTP
contract lives in a single table. Body shape is always
{"error": <kind>, "detail": <message>}.

401s carry WWW-Authenticate, and `reuse_detected` stays distinct from
`invalid`/`expired`: clients must treat it as "log in again", not
"refresh and retry".
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError

from tessera.errors import PublishFailedError, TesseraError

logger = structlog.get_logger()

STATUS_BY_KIND: dict[str, int] = {
    "invalid_state": 400,
    "invalid_grant": 400,
    "provider_unavailable": 503,
    "email_conflict": 409,
    "conflict": 409,
    "forbidden": 403,
    "expired": 401,
    "invalid": 401,
    "reuse_detected": 401,
    "not_found": 404,
    "unavailable": 503,
}


def status_for(exc: TesseraError) -> int:
    return STATUS_BY_KIND.get(exc.kind, 500)


async def tessera_error_handler(request: Request, exc: TesseraError) -> JSONResponse:
    status_code = status_for(exc)
    headers = {}
    if status_code == 401:
        headers["WWW-Authenticate"] = f'Bearer error="{exc.kind}"'
    if exc.retryable:
        headers["Retry-After"] = "1"

    if isinstance(exc, PublishFailedError):
        event_id = str(exc.event.event_id) if exc.event is not None else None
        logger.error("api.publish_failed", path=request.url.path, event_id=event_id)
    elif status_code >= 500:
        logger.error("api.error", path=request.url.path, kind=exc.kind, detail=exc.message)

    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind, "detail": exc.message},
        headers=headers,
    )


async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Connection-level store failures raised outside store_guard()."""
    logger.error("api.store_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"error": "unavailable", "detail": "Store unavailable"},
        headers={"Retry-After": "1"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TesseraError, tessera_error_handler)
    app.add_exception_handler(OperationalError, store_error_handler)
    app.add_exception_handler(InterfaceError, store_error_handler)
