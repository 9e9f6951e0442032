# FILE: hims_billing/schemas/common.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class ApiError(BaseModel):
    msg: str
    code: Optional[str] = None
    details: Optional[List[Dict[str, Any]]] = None


class ApiResponse(BaseModel):
    ok: bool
    status: bool
    msg: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ApiError] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)
