# FILE: hims_billing/utils/resp.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from hims_billing.core.errors import BillingError, PartialImportError
from hims_billing.schemas.common import ApiError, ApiResponse


def _respond(payload: ApiResponse, status: int,
             headers: Optional[Dict[str, str]]) -> JSONResponse:
    # unset optional keys (error.code, error.details) stay off the wire
    return JSONResponse(status_code=int(status),
                        content=payload.model_dump(exclude_unset=True),
                        headers=headers)


def ok(data: Any = None, status: int = 200, *, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """{ok, status: true, data} - clients unwrap `data`."""
    payload = ApiResponse(ok=True, status=True, data=jsonable_encoder(data))
    return _respond(payload, status, headers)


def err(
    message: str,
    status: int = 400,
    *,
    code: Optional[str] = None,
    details: Optional[List[Dict[str, Any]]] = None,
    data: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """
    Failure envelope:

        {ok: false, status: false, msg, message, data,
         error: {msg, code?, details?}}

    `message` mirrors `msg` for older desk screens.
    """
    text = str(message)
    extra: Dict[str, Any] = {}
    if code:
        extra["code"] = code
    if details:
        extra["details"] = jsonable_encoder(details)
    payload = ApiResponse(
        ok=False,
        status=False,
        msg=text,
        message=text,
        data=jsonable_encoder(data),
        error=ApiError(msg=text, **extra),
    )
    return _respond(payload, status, headers)


def from_error(exc: BillingError) -> JSONResponse:
    data = None
    if isinstance(exc, PartialImportError):
        # successes were kept; caller refreshes from these
        data = {"imported": exc.imported, "skipped": exc.skipped}
    return err(exc.message, exc.status_code, code=exc.code, details=exc.details, data=data)
