"""URL validation and SSRF guards shared by reviews and discovery."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import sys
from urllib.parse import urlparse

from ..errors import ConfigError

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def validate_url(url: str) -> str:
    """Check the URL is absolute http(s). Returns its origin (scheme://host[:port])."""
    try:
        parsed = urlparse(url)
    except ValueError:
        raise ConfigError(f"Invalid URL: {url}")
    if parsed.scheme not in ("http", "https"):
        raise ConfigError(
            f"Unsupported protocol: {parsed.scheme or '(none)'}. Only http and https are allowed."
        )
    if not parsed.hostname:
        raise ConfigError(f"Invalid URL: {url}")
    return f"{parsed.scheme}://{parsed.netloc}"


def is_private_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%")[0])
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified


async def check_ssrf(url: str, allow_private: bool = False):
    """Reject URLs whose host resolves to a private/internal address.

    Resolution failures are let through; the browser reports those itself.
    """
    if allow_private:
        return

    hostname = urlparse(url).hostname or ""
    try:
        infos = await asyncio.get_running_loop().getaddrinfo(hostname, None)
    except (socket.gaierror, UnicodeError) as e:
        logger.info(f"Could not resolve {hostname} for SSRF check: {e}")
        return

    for info in infos:
        address = info[4][0]
        if is_private_address(address):
            raise ConfigError(
                f"URL resolves to private/internal IP ({address}): {url}. "
                "Set allow_private to override."
            )
