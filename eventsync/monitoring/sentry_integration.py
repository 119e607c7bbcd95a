"""
Sentry error tracking for sync runs.

- Breadcrumbs carry binding context (event, source, URL, attempt)
- Sensitive data (headers, API keys, tokens) is filtered before sending
- Threshold alerts from the failure tracker are sent as messages

Sentry itself is initialised in settings/base.py when SENTRY_DSN is set;
without a DSN every call here is a no-op inside sentry_sdk.

Usage:
    from eventsync.monitoring import capture_sync_error

    try:
        run = orchestrator.run(binding)
    except Exception as e:
        capture_sync_error(e, binding=binding, attempt=attempt)
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk

logger = logging.getLogger(__name__)

# Keys whose values never leave the process
SENSITIVE_FIELDS = {
    "cookie",
    "api_key",
    "apikey",
    "api-key",
    "authorization",
    "password",
    "secret",
    "token",
    "headers",
}


def _filter_sensitive_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values of sensitive keys with "[Filtered]", recursing into dicts.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Filtered copy
    """
    if not isinstance(data, dict):
        return data

    filtered = {}
    for key, value in data.items():
        key_lower = str(key).lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
            filtered[key] = "[Filtered]"
        elif isinstance(value, dict):
            filtered[key] = _filter_sensitive_data(value)
        else:
            filtered[key] = value
    return filtered


def _binding_context(binding) -> Dict[str, Any]:
    if binding is None:
        return {}
    return {
        "binding_id": str(binding.id),
        "event": binding.event.name,
        "source": binding.source.name,
        "url": binding.effective_url,
    }


def add_sync_breadcrumb(
    binding,
    message: str = "Sync operation",
    level: str = "info",
    extra_data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Add a breadcrumb for a sync step.

    Args:
        binding: SourceBinding being synced
        message: Description of the step
        level: Log level (info, warning, error)
        extra_data: Additional context data (filtered)
    """
    data = _binding_context(binding)
    if extra_data:
        data.update(_filter_sensitive_data(extra_data))

    try:
        sentry_sdk.add_breadcrumb(category="sync", message=message, level=level, data=data)
    except Exception as e:
        logger.warning(f"Failed to add Sentry breadcrumb: {e}")


def capture_sync_error(
    error: Exception,
    binding=None,
    attempt: Optional[int] = None,
    extra_context: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Capture a sync error to Sentry with binding context.

    Args:
        error: The exception that occurred
        binding: SourceBinding instance (optional)
        attempt: Fetch attempt number
        extra_context: Additional context (filtered)
    """
    context = _binding_context(binding)

    add_sync_breadcrumb(
        binding,
        message=f"Error: {type(error).__name__}",
        level="error",
        extra_data=extra_context,
    )

    try:
        with sentry_sdk.new_scope() as scope:
            if binding is not None:
                scope.set_tag("sync.source", context["source"])
                scope.set_extra("binding_id", context["binding_id"])
                scope.set_extra("sync_url", context["url"])
            if attempt is not None:
                scope.set_tag("sync.attempt", attempt)
            if extra_context:
                scope.set_extra("sync_context", _filter_sensitive_data(extra_context))
            sentry_sdk.capture_exception(error)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")


def capture_alert(
    message: str,
    level: str = "warning",
    binding_id: Optional[str] = None,
    label: Optional[str] = None,
    extra_data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Capture an alert message to Sentry. Used for threshold breaches.

    Args:
        message: Alert message
        level: Severity level (warning, error)
        binding_id: SourceBinding ID
        label: Human-readable binding label ("event <- source")
        extra_data: Additional alert data (filtered)
    """
    try:
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("alert.type", "threshold_breach")
            if label:
                scope.set_tag("sync.binding", label)
            if binding_id:
                scope.set_extra("binding_id", binding_id)
            if extra_data:
                scope.set_extra("alert_data", _filter_sensitive_data(extra_data))
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.warning(f"Failed to capture alert to Sentry: {e}")
