"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in permit_portal/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from permit_portal.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Store proxy:       STORE_PROXY_RATE_LIMIT (default 120 per minute)
        - Projects/partners: 60/minute
        - Analytics:         200/minute
        - Health check:      exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    proxy_limit = app.config.get("STORE_PROXY_RATE_LIMIT", "120 per minute")
    bp = app.blueprints.get("supabase_proxy")
    if bp:
        limiter.limit(proxy_limit)(bp)

    for bp_name in ("projects", "partners"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("analytics")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — proxy: %s, write: %s, read: %s",
        proxy_limit, WRITE_LIMIT, READ_LIMIT,
    )
