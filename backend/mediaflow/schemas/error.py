from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    error: Any
    code: str | None = None
    message: str | None = None
