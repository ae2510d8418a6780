"""Common Pydantic schemas."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str
    instance_id: str


class OutboxStats(BaseModel):
    """Webhook outbox statistics."""

    pending: int = 0
    processing: int = 0
    delivered: int = 0
    dead_letter: int = 0


class ReadyResponse(BaseModel):
    """Readiness check response."""

    status: str = "ok"
    database: str = "ok"
    outbox: OutboxStats | None = None  # Optional outbox statistics


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class ErrorResponse(BaseModel):
    """Error response."""

    detail: str
