"""Ollama vision-model client.

Uses streaming NDJSON so long inferences keep the connection busy behind
proxies with idle timeouts; httpx's read timeout acts as the inter-chunk
silence limit.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
import sys
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from ..config import (
    ANALYSIS_TIMEOUT,
    CF_ACCESS_CLIENT_ID,
    CF_ACCESS_CLIENT_SECRET,
    NUM_CTX,
    NUM_PREDICT,
    OLLAMA_MODEL,
    OLLAMA_URL,
)
from ..errors import (
    AnalysisAuthError,
    AnalysisConnectionError,
    AnalysisModelError,
    AnalysisResponseError,
    AnalysisTimeoutError,
)

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}
MAX_CONTENT_SIZE = 5_000_000
MAX_ATTEMPTS = 3


def mask_secret(value: str) -> str:
    return value[:4] + "****" if value else "<not set>"


def strip_think_tags(text: str) -> str:
    """Drop <think>...</think> reasoning blocks some models emit."""
    return re.sub(r"<think>[\s\S]*?</think>\s*", "", text)


def parse_vlm_json(text: str) -> dict:
    """Parse model output as JSON with fallbacks.

    Tries a direct parse, then a fenced ```json block, then the outermost
    brace-delimited object. Falls back to ``{"issues": [], "summary": text,
    "_raw": True}``.
    """
    candidates = [text]
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if fenced:
        candidates.append(fenced.group(1))
    braced = re.search(r"\{[\s\S]*\}", text)
    if braced:
        candidates.append(braced.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed

    return {"issues": [], "summary": text, "_raw": True}


class OllamaClient:
    """Sends screenshots and prompts to an Ollama server."""

    def __init__(
        self,
        base_url: str = OLLAMA_URL,
        model: str = OLLAMA_MODEL,
        timeout_ms: int = ANALYSIS_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        retry_delay: float = 2.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = timeout_ms / 1000
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(self._timeout, connect=10.0))
        self._retry_delay = retry_delay

    async def aclose(self):
        await self._client.aclose()

    @property
    def is_local(self) -> bool:
        return (urlparse(self.base_url).hostname or "") in LOCAL_HOSTS

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if not self.is_local:
            if CF_ACCESS_CLIENT_ID:
                headers["CF-Access-Client-Id"] = CF_ACCESS_CLIENT_ID
            if CF_ACCESS_CLIENT_SECRET:
                headers["CF-Access-Client-Secret"] = CF_ACCESS_CLIENT_SECRET
        return headers

    def _check_response(self, response: httpx.Response):
        """Raise typed errors for access challenges and bad statuses."""
        content_type = response.headers.get("content-type", "")
        if "text/html" in content_type:
            if response.status_code == 524:
                raise AnalysisTimeoutError("Cloudflare 524 timeout, server took too long to respond.")
            hint = ""
            if not self.is_local:
                hint = (
                    f" Check CF_ACCESS_CLIENT_ID ({mask_secret(CF_ACCESS_CLIENT_ID)}) and "
                    f"CF_ACCESS_CLIENT_SECRET ({mask_secret(CF_ACCESS_CLIENT_SECRET)})."
                )
            raise AnalysisAuthError(
                f"Received HTML response (HTTP {response.status_code}) from Ollama, "
                f"likely an access challenge.{hint}"
            )
        if response.status_code == 403:
            raise AnalysisAuthError("Ollama returned 403 Forbidden, check access credentials.")
        if response.status_code == 404:
            raise AnalysisModelError(
                f'Model "{self.model}" not found. Run: ollama pull {self.model}'
            )
        if response.status_code >= 400:
            raise AnalysisConnectionError(f"Ollama request failed: HTTP {response.status_code}")

    async def _with_retry(self, fn):
        """Retry timeouts and connection errors with exponential backoff."""
        last_error: Exception | None = None
        for attempt in range(MAX_ATTEMPTS):
            if attempt > 0:
                wait = self._retry_delay * 2 ** (attempt - 1)
                logger.warning(f"Retry {attempt}/{MAX_ATTEMPTS - 1} after {wait:.0f}s: {last_error}")
                await asyncio.sleep(wait)
            try:
                return await fn()
            except (AnalysisTimeoutError, AnalysisConnectionError) as e:
                last_error = e
        raise last_error

    async def _stream_chat(self, body: dict) -> tuple[str, Optional[str]]:
        """POST /api/chat and accumulate streamed content. Returns (content, done_reason)."""
        url = f"{self.base_url}/api/chat"
        chunks: list[str] = []
        size = 0
        done_reason = None

        try:
            async with self._client.stream("POST", url, json=body, headers=self._headers()) as response:
                if response.status_code >= 400 or "text/html" in response.headers.get("content-type", ""):
                    await response.aread()
                    self._check_response(response)

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping unparseable NDJSON line: {line[:100]}")
                        continue

                    if data.get("error"):
                        raise AnalysisConnectionError(f"Ollama error: {data['error']}")

                    content = (data.get("message") or {}).get("content") or ""
                    if content:
                        size += len(content)
                        if size > MAX_CONTENT_SIZE:
                            raise AnalysisResponseError(
                                f"Ollama response content too large (>{MAX_CONTENT_SIZE // 1_000_000}MB limit)"
                            )
                        chunks.append(content)

                    if data.get("done"):
                        done_reason = data.get("done_reason")

        except httpx.TimeoutException as e:
            raise AnalysisTimeoutError(
                f"Ollama request timed out after {len(chunks)} content chunks"
            ) from e
        except httpx.HTTPError as e:
            raise AnalysisConnectionError(f"Cannot connect to Ollama at {self.base_url}: {e}") from e

        return "".join(chunks), done_reason

    async def health_check(self) -> list[str]:
        """Hit /api/tags and return the available model names."""
        try:
            response = await self._client.get(
                f"{self.base_url}/api/tags", headers=self._headers(), timeout=10.0
            )
        except httpx.TimeoutException as e:
            raise AnalysisTimeoutError(f"Ollama health check timed out: {self.base_url}") from e
        except httpx.HTTPError as e:
            raise AnalysisConnectionError(f"Cannot connect to Ollama at {self.base_url}: {e}") from e

        if response.status_code == 404:
            raise AnalysisConnectionError("Ollama health check failed: HTTP 404")
        self._check_response(response)
        return [m.get("name", "") for m in response.json().get("models", [])]

    async def prewarm(self):
        """Load the model into memory with a tiny text-only request."""
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": 'Respond with "ready".'}],
            "stream": True,
            "think": False,
            "keep_alive": "10m",
            "options": {"temperature": 0, "num_predict": 8},
        }
        await self._with_retry(lambda: self._stream_chat(body))

    async def analyze(
        self,
        system_prompt: str,
        prompt: str,
        images: Optional[list[bytes]] = None,
    ) -> dict[str, Any]:
        """Run the vision model on images and return its parsed response.

        Unstructured output comes back as ``{"summary": text, "_raw": True}``.
        """
        images = images or []
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({
            "role": "user",
            "content": prompt,
            "images": [base64.b64encode(img).decode("ascii") for img in images],
        })
        body = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "keep_alive": "10m",
            "options": {"temperature": 0, "num_predict": NUM_PREDICT, "num_ctx": NUM_CTX},
        }

        sizes = ", ".join(f"{len(img) // 1024}KB" for img in images)
        logger.info(f"[ANALYZE] model={self.model} images=[{sizes}] prompt={len(prompt)} chars")

        content, done_reason = await self._with_retry(lambda: self._stream_chat(body))
        if done_reason == "length":
            logger.warning("Response truncated, consider increasing NUM_PREDICT")

        return parse_vlm_json(strip_think_tags(content))
