"""Mihrab server entry point: ``python -m mihrab.core.server.main``.

Validates the configuration before anything binds a socket, reports the
settings that degrade behaviour (no user, no location, plain snapshots),
then serves the MCP tools over streamable HTTP.
"""

from __future__ import annotations

import logging
from ipaddress import ip_address

from mihrab.core.config.settings import Settings, get_settings
from mihrab.core.server.app import create_app

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class InsecureBindError(RuntimeError):
    """Raised when asked to listen beyond loopback without an explicit opt-in."""


def is_loopback_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def ensure_safe_bind(settings: Settings) -> None:
    """The tools carry no auth of their own, so only loopback is allowed by default."""
    if settings.mihrab_allow_insecure_bind or is_loopback_host(settings.mihrab_host):
        return
    raise InsecureBindError(
        f"Refusing to serve prayer history on {settings.mihrab_host!r}. "
        "Set MIHRAB_ALLOW_INSECURE_BIND=true to listen beyond loopback."
    )


def startup_warnings(settings: Settings) -> list[str]:
    """Configuration gaps the server tolerates but an operator should hear about."""
    warnings: list[str] = []
    if not settings.mihrab_user_id:
        warnings.append("MIHRAB_USER_ID is not set; every prayer tool will report no_user")
    if (settings.latitude is None) != (settings.longitude is None):
        warnings.append("Only one of LATITUDE/LONGITUDE is set; both are needed for real timings")
    elif settings.latitude is None:
        warnings.append("No location configured; records use static prayer timings")
    if not settings.encryption_key:
        warnings.append(f"ENCRYPTION_KEY is not set; snapshots in {settings.cache_dir} are plain JSON")
    if settings.reconcile_interval_seconds <= 0:
        warnings.append("Periodic reconciliation is disabled; statuses update on read only")
    return warnings


def run() -> None:
    """Start the Mihrab MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.mihrab_log_level.upper(), logging.INFO),
        format=_LOG_FORMAT,
    )

    ensure_safe_bind(settings)
    for message in startup_warnings(settings):
        logger.warning(message)

    mcp = create_app()
    logger.info(
        "Serving prayer history for %s on %s:%d",
        settings.mihrab_user_id or "<no user>",
        settings.mihrab_host,
        settings.mihrab_port,
    )
    mcp.run(
        transport="streamable-http",
        host=settings.mihrab_host,
        port=settings.mihrab_port,
    )


if __name__ == "__main__":
    run()
