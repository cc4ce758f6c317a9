"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

DECISION_LIMIT = "60/minute"
ADMIN_LIMIT = "30/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Approval endpoints:        60/minute (submit, decide, my-approvals)
        - Workflow administration:   30/minute
        - Health check:              exempt

    Rate limiting is disabled in testing mode or when RATELIMIT_ENABLED is false.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    bp = app.blueprints.get("approval")
    if bp:
        limiter.limit(DECISION_LIMIT)(bp)

    bp = app.blueprints.get("workflow_admin")
    if bp:
        limiter.limit(ADMIN_LIMIT)(bp)

    health_view = app.view_functions.get("health")
    if health_view:
        limiter.exempt(health_view)

    app.logger.info(
        "Rate limiter configured: approvals %s, workflow admin %s",
        DECISION_LIMIT, ADMIN_LIMIT,
    )
