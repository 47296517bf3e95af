"""HTTP transport for the guidance engine."""

from .routes import (
    get_action_registry,
    get_event_log,
    get_run_service,
    get_versions,
    guidance_error_handler,
    reset_services,
    router,
)

__all__ = [
    "router",
    "guidance_error_handler",
    "get_action_registry",
    "get_event_log",
    "get_run_service",
    "get_versions",
    "reset_services",
]
