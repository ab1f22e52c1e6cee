import asyncio
from typing import Any, Dict, Optional

import openai

RATE_LIMITED = "We're experiencing high demand right now. Please try again in a moment."
AUTH_FAILED = "Authentication error occurred. Please try again later."
SERVER_ERROR = "Our AI service is temporarily unavailable. Please try again later."
TIMED_OUT = "Request timed out. Please try again or use a simpler prompt."
OFFLINE = "Please check your internet connection and try again."
GENERIC = "Something went wrong with AI generation. Please try again."


class WorkspaceError(Exception):
    """Base error carrying a user-facing message and an HTTP status."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None, original: Any = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.original = original
        # extra fields returned next to the message
        self.details = dict(details or {})
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(WorkspaceError):
    status_code = 404


class ValidationError(WorkspaceError):
    status_code = 422


class ConflictError(WorkspaceError):
    status_code = 409


class StoreError(WorkspaceError):
    status_code = 502


class LLMError(WorkspaceError):
    status_code = 502


class UploadError(WorkspaceError):
    status_code = 400


def friendly_llm_message(error: BaseException) -> str:
    """Map an exception raised while talking to the model to one of the fixed user messages."""
    if isinstance(error, openai.APITimeoutError) or isinstance(error, asyncio.TimeoutError):
        return TIMED_OUT
    if isinstance(error, openai.APIConnectionError):
        return OFFLINE

    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    if isinstance(status, int):
        if status == 429:
            return RATE_LIMITED
        if status in (401, 403):
            return AUTH_FAILED
        if status >= 500:
            return SERVER_ERROR

    if "network" in str(error).lower():
        return OFFLINE
    return GENERIC


def llm_error_from(error: BaseException) -> LLMError:
    if isinstance(error, LLMError):
        return error
    return LLMError(friendly_llm_message(error), original=error)
