# FILE: hims_billing/api/exception_handlers.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError
from starlette.exceptions import HTTPException as StarletteHTTPException

from hims_billing.core.errors import BillingError, PartialImportError
from hims_billing.utils.resp import err, from_error

logger = logging.getLogger(__name__)


def _validation_details(exc: RequestValidationError):
    out = []
    for e in exc.errors():
        loc = ".".join(str(x) for x in (e.get("loc") or ()) if x != "body")
        out.append({"field": loc, "msg": str(e.get("msg") or "")})
    return out


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        if isinstance(exc, PartialImportError):
            logger.warning("%s %s partial import: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return from_error(exc)

    @app.exception_handler(StaleDataError)
    async def stale_data_handler(request: Request, exc: StaleDataError) -> JSONResponse:
        logger.info("Concurrent update on %s: %s", request.url.path, exc)
        return err("Record was changed by another user. Reload and retry.", 409, code="CONFLICT")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # exc.detail can be str/dict/list
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return err(msg, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = _validation_details(exc)
        msg = details[0]["msg"] if details else "Validation error"
        return err(msg, 422, code="VALIDATION_ERROR", details=details)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return err("Internal server error", 500)
