import json
from typing import Any, Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from firecrawl_client.models import HttpResponse, JobState

ModelT = TypeVar("ModelT", bound=BaseModel)


class FirecrawlError(Exception):
    """Base for every error surfaced to callers; ``action`` names what was being attempted"""

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action


class TransportError(FirecrawlError):
    """The request could not be completed: network failures or 5xx on every attempt"""

    def __init__(self, action: str, attempts: int, last_cause: BaseException):
        super().__init__(
            f"Failed to {action}. Request failed after {attempts} attempts: {last_cause}",
            action,
        )
        self.attempts = attempts
        self.last_cause = last_cause


class ApiError(FirecrawlError):
    """The server rejected the request (4xx) or reported ``success: false``"""

    def __init__(self, action: str, status: int, message: str):
        super().__init__(
            f"Failed to {action}. Status: {status}, Message: {message}", action
        )
        self.status = status
        self.message = message


class DecodeError(FirecrawlError):
    """The response body is not JSON or does not have the expected shape"""

    def __init__(self, action: str, detail: str, body: str = ""):
        super().__init__(f"Failed to {action}. {detail}", action)
        self.body = body


class JobError(FirecrawlError):
    """The remote job itself reached ``failed`` or ``cancelled``"""

    def __init__(
        self,
        action: str,
        state: JobState,
        message: Optional[str],
        job_id: Optional[str] = None,
    ):
        super().__init__(
            f"Failed to {action}. Job {state.value}. Error: {message}", action
        )
        self.state = state
        self.message = message
        self.job_id = job_id


class RetryableRequestError(Exception):
    """Raised inside the transport loop to request another attempt; never escapes it"""

    def __init__(self, cause: BaseException):
        super().__init__(str(cause))
        self.cause = cause


class ServerStatusError(Exception):
    def __init__(self, status: int):
        super().__init__(f"Server error: {status}")
        self.status = status


def decode_json(response: HttpResponse, action: str) -> Any:
    try:
        return json.loads(response.text)
    except ValueError as e:
        logger.error(f"Invalid JSON from {response.url}: {e}")
        raise DecodeError(
            action, "Failed to parse Firecrawl response as JSON.", response.text
        ) from e


def decode_model(model: Type[ModelT], response: HttpResponse, action: str) -> ModelT:
    payload = decode_json(response, action)
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Unexpected response shape from {response.url}: {e}")
        raise DecodeError(
            action, f"Unexpected response shape: {e}", response.text
        ) from e


def api_error_from_response(response: HttpResponse, action: str) -> ApiError:
    """Builds an ApiError from the body's ``error`` field, falling back to raw text"""
    try:
        body = json.loads(response.text)
    except ValueError:
        message = response.text
    else:
        if isinstance(body, dict):
            message = body.get("error") or "Unknown error"
        else:
            message = response.text
    return ApiError(action, response.status, message)
