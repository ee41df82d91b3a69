"""
Structured Logging
==================
One place to configure structlog for the collection flow.

Every component binds a ``component`` name; the orchestrator additionally
binds the payment account and a per-attempt correlation id.
"""

import logging

import structlog

from unpaid_collection.config import settings

_configured = False


def configure_logging(level: str = None, json_output: bool = None) -> None:
    """Configure structlog once per process."""
    global _configured

    level_name = (level or settings.log_level).upper()
    use_json = settings.log_json if json_output is None else json_output

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(component: str):
    """Logger bound to a component name, configuring on first use."""
    if not _configured:
        configure_logging()
    return structlog.get_logger().bind(component=component)
