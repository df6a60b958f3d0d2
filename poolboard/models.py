"""Pydantic request models for the REST API."""

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    address: str = Field(..., min_length=1, max_length=100)
