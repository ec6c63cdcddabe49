"""Pydantic models for request and response bodies.

Field names on the wire are camelCase (``executionId``, ``exitCode``) to
match what the learning platform's client adapter expects; the Python side
uses snake_case with aliases.  Request fields are all optional at the schema
level so that missing ``code``/``language`` can be reported as a 400 with the
usual error payload instead of a generic validation error.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .executor.base import ExecutionResult
from .languages import LanguageProfile


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecuteRequest(BaseModel):
    """Request body for ``POST /execute``."""

    code: Optional[str] = Field(default=None, description="Source code to execute.")
    language: Optional[str] = Field(
        default=None, description="Language identifier, e.g. 'python' or 'java'."
    )
    input: Optional[str] = Field(
        default="", description="Text passed to the program on standard input."
    )
    timeout: Optional[int] = Field(
        default=None,
        description="Wall-clock timeout in milliseconds; clamped to the server maximum.",
    )


class ExecuteResponse(CamelModel):
    """Response body for an execution that the sandbox carried out."""

    success: bool
    execution_id: str
    language: str
    execution_time: int
    output: str
    error: str
    exit_code: int

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecuteResponse":
        return cls(
            success=result.success,
            execution_id=result.execution_id,
            language=result.language,
            execution_time=result.execution_time_ms,
            output=result.output,
            error=result.error,
            exit_code=result.exit_code,
        )


class ErrorResponse(CamelModel):
    success: bool = False
    error: str
    execution_id: Optional[str] = None
    execution_time: Optional[int] = None
    supported_languages: Optional[List[str]] = None
    details: Optional[str] = None


class LanguageInfo(CamelModel):
    name: str
    display_name: str
    extension: str
    timeout: int

    @classmethod
    def from_profile(cls, profile: LanguageProfile) -> "LanguageInfo":
        return cls(
            name=profile.id,
            display_name=profile.display_name,
            extension=profile.file_extension,
            timeout=profile.default_timeout_ms,
        )


class LanguagesResponse(CamelModel):
    success: bool = True
    languages: List[LanguageInfo] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    service: str = "CodeRunner"
    runtime: str


class NotFoundResponse(CamelModel):
    success: bool = False
    error: str = "Endpoint not found"
    available_endpoints: List[str]
