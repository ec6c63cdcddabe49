"""HTTP client for the code runner, as used by the learning platform.

The client never raises for service problems and never retries: any
transport error, non-2xx status or malformed body becomes an
:class:`ExecutionResult` with ``success=False`` that the caller can show to
the student as-is.  The language list falls back to a built-in copy so the
editor keeps working while the runner is down.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .executor.base import ExecutionResult
from .models import ExecuteResponse, LanguageInfo, LanguagesResponse

logger = logging.getLogger("coderunner.client")

DEFAULT_BASE_URL = "http://localhost:3001"
# Must exceed the server's own maximum execution timeout.
DEFAULT_TIMEOUT_SECONDS = 60.0

FALLBACK_LANGUAGES: List[LanguageInfo] = [
    LanguageInfo(name="java", display_name="Java", extension=".java", timeout=30000),
    LanguageInfo(name="csharp", display_name="C#", extension=".cs", timeout=30000),
    LanguageInfo(name="javascript", display_name="JavaScript", extension=".js", timeout=30000),
    LanguageInfo(name="python", display_name="Python", extension=".py", timeout=30000),
]


class CodeRunnerClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"x-api-key": api_key} if api_key else {}
        self._http = httpx.Client(
            base_url=base_url, timeout=timeout, headers=headers, transport=transport
        )

    def __enter__(self) -> "CodeRunnerClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def execute(
        self,
        code: str,
        language: str,
        input: str = "",
        timeout_ms: int = 30000,
    ) -> ExecutionResult:
        language = language.lower()
        payload: Dict[str, Any] = {
            "code": code,
            "language": language,
            "input": input or "",
            "timeout": timeout_ms,
        }
        logger.info("Executing code for language: %s", language)

        try:
            response = self._http.post("/execute", json=payload)
        except httpx.TimeoutException as exc:
            logger.error("Code execution timed out: %s", exc)
            return _failure(language, "Code execution timed out")
        except httpx.HTTPError as exc:
            logger.error("Error executing code: %s", exc)
            return _failure(language, "Internal error during code execution")

        if response.is_success or response.status_code == 500:
            # A 500 carrying a full result is a timeout kill with partial output.
            try:
                body = ExecuteResponse.model_validate(response.json())
            except ValueError:
                body = None
            if body is not None:
                return ExecutionResult(
                    execution_id=body.execution_id,
                    success=body.success,
                    output=body.output,
                    error=body.error,
                    exit_code=body.exit_code,
                    execution_time_ms=body.execution_time,
                    language=body.language or language,
                    timed_out=not response.is_success,
                )
            if response.is_success:
                logger.error("Malformed response from code runner: %s", response.text[:500])
                return _failure(language, "Malformed response from code execution service")

        logger.error(
            "Code execution failed with status: %s, Response: %s",
            response.status_code,
            response.text[:500],
        )
        return _failure(language, f"Code execution service error: {response.status_code}")

    def get_supported_languages(self) -> List[LanguageInfo]:
        try:
            response = self._http.get("/languages")
            response.raise_for_status()
            return LanguagesResponse.model_validate(response.json()).languages
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error getting supported languages: %s", exc)
            return list(FALLBACK_LANGUAGES)

    def is_healthy(self) -> bool:
        try:
            response = self._http.get("/health")
        except httpx.HTTPError as exc:
            logger.error("Health check failed for code runner service: %s", exc)
            return False
        return response.is_success


def _failure(language: str, error: str) -> ExecutionResult:
    return ExecutionResult(
        execution_id="",
        success=False,
        output="",
        error=error,
        exit_code=-1,
        execution_time_ms=0,
        language=language,
    )
