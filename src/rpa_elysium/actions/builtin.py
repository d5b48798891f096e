"""Built-in control and utility actions."""

import asyncio
from typing import Any

import httpx
import structlog

from ..core.errors import ExecutionError, ValidationError
from .registry import ActionContext, ActionRegistry


logger = structlog.get_logger()

LOG_LEVELS = ("debug", "info", "warning", "error")
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
MAX_RESPONSE_BODY = 10000


async def noop_action(params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    """No operation - useful for testing."""
    return {"action": "noop"}


async def echo_action(params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    """Echo params back as output."""
    return {"echo": params}


async def log_action(params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    """Log a message (for debugging/audit)."""
    message = params.get("message", "")
    level = params.get("level", "info")
    getattr(logger, level)(
        "workflow_log",
        message=message,
        run_id=context.run_id,
        step_id=context.step_id,
    )
    return {"logged": True, "message": message, "level": level}


def _validate_log(params: dict[str, Any]) -> None:
    level = params.get("level", "info")
    if level not in LOG_LEVELS:
        raise ValidationError(
            f"Invalid log level '{level}', expected one of {', '.join(LOG_LEVELS)}",
            action="log",
            field="level",
        )


async def delay_action(params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    """Delay execution for specified seconds."""
    seconds = float(params.get("seconds", 1))
    await asyncio.sleep(seconds)
    return {"delayed_seconds": seconds}


def _validate_delay(params: dict[str, Any]) -> None:
    try:
        seconds = float(params.get("seconds", 1))
    except (TypeError, ValueError):
        raise ValidationError("seconds must be a number", action="delay", field="seconds")
    if seconds < 0:
        raise ValidationError("seconds must be >= 0", action="delay", field="seconds")


async def set_variable_action(params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    """Set a variable value (output becomes available to next steps)."""
    return {params["name"]: params.get("value")}


async def fail_action(params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    """Always fail. Exercises retry and error handling paths."""
    raise ExecutionError(
        params.get("message", "Intentional failure"),
        action=context.action,
        permanent=bool(params.get("permanent", False)),
    )


async def http_request_action(params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
    """Simple HTTP request action.

    5xx responses and transport errors are retryable; 4xx responses are
    permanent failures unless ``raise_for_status`` is false.
    """
    url = params["url"]
    method = params.get("method", "GET").upper()
    headers = params.get("headers", {})
    body = params.get("body")
    timeout = params.get("timeout", 30)

    try:
        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                json=body if isinstance(body, (dict, list)) else None,
                content=body if isinstance(body, str) else None,
                timeout=timeout,
            )
    except httpx.HTTPError as e:
        raise ExecutionError(f"HTTP request failed: {e}", action=context.action)

    if params.get("raise_for_status", True) and response.status_code >= 400:
        raise ExecutionError(
            f"HTTP {response.status_code} from {url}",
            action=context.action,
            permanent=response.status_code < 500,
            context={"status_code": response.status_code},
        )

    return {
        "status_code": response.status_code,
        "headers": dict(response.headers),
        "body": response.text[:MAX_RESPONSE_BODY],
    }


def _validate_http_request(params: dict[str, Any]) -> None:
    method = str(params.get("method", "GET")).upper()
    if method not in HTTP_METHODS:
        raise ValidationError(f"Unsupported HTTP method: {method}", action="http_request", field="method")
    if not str(params["url"]).startswith(("http://", "https://")):
        raise ValidationError("url must be http(s)", action="http_request", field="url")


def register_builtin_actions(registry: ActionRegistry) -> None:
    """Register control and utility actions."""
    registry.register_function("noop", noop_action, idempotent=True)
    registry.register_function("echo", echo_action, idempotent=True)
    registry.register_function("log", log_action, validator=_validate_log, idempotent=True)
    registry.register_function("delay", delay_action, validator=_validate_delay, idempotent=True)
    registry.register_function("set_variable", set_variable_action, required=("name",), idempotent=True)
    registry.register_function("fail", fail_action)
    registry.register_function(
        "http_request",
        http_request_action,
        required=("url",),
        validator=_validate_http_request,
    )
