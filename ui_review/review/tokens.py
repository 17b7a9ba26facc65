"""Per-page token injection and scripted form login.

Tokens are fetched through the site's own API with the cookies captured in
the browser auth state, the same way the stored browser session would call it.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from ..errors import LoginError, TokenGenerationError
from ..models.page import LoginSpec, PageSpec

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


@dataclass
class TokenGrant:
    query_param: str
    value: str

    def __repr__(self) -> str:
        return f"TokenGrant(query_param={self.query_param!r}, value='****')"


def _domain_matches(host: str, cookie_domain: str) -> bool:
    domain = cookie_domain.lstrip(".").lower()
    host = host.lower()
    return bool(domain) and (host == domain or host.endswith("." + domain))


def cookie_header(auth_state: Optional[dict], url: str) -> str:
    """Build a Cookie header from stored cookies whose domain matches the URL host."""
    if not auth_state:
        return ""
    host = urlparse(url).hostname or ""
    pairs = [
        f"{c['name']}={c['value']}"
        for c in auth_state.get("cookies", [])
        if "name" in c and "value" in c and _domain_matches(host, c.get("domain", ""))
    ]
    return "; ".join(pairs)


def walk_path(data: Any, path: str) -> Any:
    """Follow a dot-separated path (list indexes allowed) into parsed JSON."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def inject_token(url: str, grant: Optional[TokenGrant]) -> str:
    """Append the token as a query parameter, keeping existing parameters."""
    if grant is None:
        return url
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != grant.query_param]
    query.append((grant.query_param, grant.value))
    return urlunparse(parsed._replace(query=urlencode(query)))


class TokenInjector:
    """Fetches short-lived page tokens over an authenticated side channel."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client
        self._timeout = timeout

    async def generate_token(
        self,
        page: PageSpec,
        base_url: str,
        auth_state: Optional[dict] = None,
    ) -> Optional[TokenGrant]:
        """Fetch the token a page needs, or None if the page declares no token auth.

        Raises:
            TokenGenerationError: non-success status, invalid JSON, or the
                token path resolved to nothing.
        """
        token_auth = page.token_auth
        if token_auth is None:
            return None

        endpoint = base_url.rstrip("/") + token_auth.endpoint
        headers = {"Accept": "application/json"}
        cookies = cookie_header(auth_state, endpoint)
        if cookies:
            headers["Cookie"] = cookies

        logger.info(f"[TOKEN] {token_auth.method} {token_auth.endpoint} for page '{page.name}'")
        try:
            if self._client is not None:
                response = await self._client.request(
                    token_auth.method, endpoint, json=token_auth.body, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                    response = await client.request(
                        token_auth.method, endpoint, json=token_auth.body, headers=headers
                    )
        except httpx.HTTPError as e:
            raise TokenGenerationError(f"Token endpoint {token_auth.endpoint} unreachable: {type(e).__name__}") from e

        if not response.is_success:
            raise TokenGenerationError(
                f"Token endpoint {token_auth.endpoint} returned HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise TokenGenerationError(f"Token endpoint {token_auth.endpoint} returned invalid JSON") from e

        value = walk_path(data, token_auth.token_path)
        if value is None or value == "":
            raise TokenGenerationError(
                f"Token path '{token_auth.token_path}' not found in response from {token_auth.endpoint}"
            )

        return TokenGrant(query_param=token_auth.query_param, value=str(value))


# ── Login ────────────────────────────────────────────────────────────────────


async def perform_login(handle, base_url: str, login: LoginSpec) -> dict:
    """Log in through the site's form and return the resulting storage state.

    Success is judged by the URL path changing after submit. Single-page
    logins that do not navigate are reported as failures.
    """
    login_url = base_url.rstrip("/") + login.login_path
    page = await handle.new_page()
    try:
        logger.info(f"[LOGIN] Navigating to {login.login_path}...")
        await page.goto(login_url, wait_until="domcontentloaded")
        await page.fill(login.username_selector, login.username)
        await page.fill(login.password_selector, login.password)
        await page.click(login.submit_selector)
        try:
            await page.wait_for_load_state("networkidle")
        except Exception:
            logger.warning("[LOGIN] Page did not settle after submit, checking URL anyway")

        landed = urlparse(page.url).path.rstrip("/") or "/"
        if landed == (login.login_path.rstrip("/") or "/"):
            raise LoginError("Still on login page after submit. Check credentials and selectors.")

        state = await handle.storage_state(page)
        logger.info(f"[LOGIN] Authenticated, landed on {landed} ({len(state.get('cookies', []))} cookies)")
        return state
    except LoginError:
        raise
    except Exception as e:
        raise LoginError(f"Login failed: {e}") from e
    finally:
        try:
            await handle.close_page(page)
        except Exception as e:
            logger.warning(f"[LOGIN] Could not close login page: {e}")
