"""Schemas shared across the API."""

from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"


class ErrorResponse(BaseModel):
    """Body of every error produced by ErrorHandlerMiddleware."""

    error: str
    message: str
