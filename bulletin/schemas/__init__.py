"""Pydantic schemas for request/response validation."""

from bulletin.schemas.common import HealthResponse, MessageResponse, PaginatedResponse

__all__ = [
    "HealthResponse",
    "MessageResponse",
    "PaginatedResponse",
]
