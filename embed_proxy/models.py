from pydantic import BaseModel
from typing import Optional


class ErrorResponse(BaseModel):
    error: str
    detail: str
    status_code: int
    target_url: Optional[str] = None

    @classmethod
    def from_exception(cls, exc) -> "ErrorResponse":
        return cls(
            error=exc.error,
            detail=exc.detail,
            status_code=exc.status_code,
            target_url=exc.target_url,
        )


class HealthResponse(BaseModel):
    status: str = "ok"
