"""
Response models shared by every mutating endpoint.
"""

from typing import Optional

from pydantic import BaseModel, Field


class MutationResponse(BaseModel):
    """Result of any mutating operation."""

    success: bool = Field(..., description="Whether the operation succeeded")
    error: Optional[str] = Field(None, description="Human-readable failure message")
    error_type: Optional[str] = Field(None, description="Stable error classification")
    suggestion: Optional[str] = Field(None, description="Suggested next action")
    id: Optional[str] = Field(None, description="Identifier of the created or affected record")
    output: Optional[str] = Field(None, description="Gateway command output, when a config test rejected the change")
    message: Optional[str] = Field(None, description="Informational note about the outcome")


class CommandOutputResponse(BaseModel):
    """Result of running the gateway binary (test or reload)."""

    success: bool
    output: str = Field(default="", description="Combined stdout/stderr of the command")
