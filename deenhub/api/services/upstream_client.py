"""HTTP client for third-party data APIs (Quran.com, Aladhan, Sunnah.com, BAJUS).

GET only. Every call has an explicit timeout, goes through the host's
circuit breaker, and is retried with exponential backoff on transient
failures. Upstream status codes are translated into the error taxonomy in
``deenhub.core.exceptions``.
"""

import logging
from typing import Any

import httpx

from deenhub.core.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from deenhub.core.config import get_settings
from deenhub.core.exceptions import (
    MappingError,
    UpstreamAuthError,
    UpstreamCircuitOpen,
    UpstreamClientError,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from deenhub.core.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)
settings = get_settings()

USER_AGENT = f"deenhub-sync/{settings.app_version}"

# Shared per-process breakers, keyed by host
breaker_registry = CircuitBreakerRegistry(
    CircuitBreakerConfig(
        failure_threshold=settings.upstream_breaker_failure_threshold,
        recovery_timeout=settings.upstream_breaker_recovery_seconds,
    )
)


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.upstream_max_retries,
        backoff_factor=settings.upstream_backoff_factor,
        max_wait=settings.upstream_max_wait_seconds,
        jitter=settings.upstream_retry_jitter_seconds,
    )


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class UpstreamClient:
    """Retrying GET client bound to one upstream base URL."""

    def __init__(
        self,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        policy: RetryPolicy | None = None,
        timeout: float | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"User-Agent": USER_AGENT, "Accept": "application/json", **(headers or {})}
        self.policy = policy or default_retry_policy()
        self.timeout = timeout if timeout is not None else settings.upstream_timeout_seconds
        self.breakers = breakers or breaker_registry
        self._transport = transport

    def build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def fetch(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """GET ``path`` and return the decoded body (JSON, or text otherwise).

        Raises:
            UpstreamAuthError: 401, never retried
            UpstreamClientError: other 4xx, never retried
            UpstreamRateLimited: 429 after retries are exhausted
            UpstreamUnavailable: 5xx/timeout/connection error after retries
            UpstreamCircuitOpen: the host's breaker is open
            MappingError: a JSON content type with a body that does not parse
        """
        url = self.build_url(path)
        return await call_with_retry(
            lambda: self._request_once(url, params, headers),
            self.policy,
            f"GET {url}",
        )

    async def _request_once(
        self,
        url: str,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> Any:
        breaker = self.breakers.for_url(url)
        if not breaker.can_execute():
            raise UpstreamCircuitOpen(f"Circuit open for {breaker.name}", url=url)

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.get(
                    url, params=params, headers={**self.headers, **(headers or {})}
                )
        except httpx.TimeoutException as e:
            breaker.record_failure()
            raise UpstreamUnavailable(f"Timeout calling {url}: {e}", url=url) from e
        except httpx.TransportError as e:
            breaker.record_failure()
            raise UpstreamUnavailable(f"Connection error calling {url}: {e}", url=url) from e

        status_code = response.status_code
        if status_code >= 500:
            breaker.record_failure()
            raise UpstreamUnavailable(
                f"Upstream returned {status_code}", status_code=status_code, url=url
            )

        breaker.record_success()

        if status_code == 401:
            raise UpstreamAuthError(
                "Upstream rejected credentials (401)", status_code=status_code, url=url
            )
        if status_code == 429:
            raise UpstreamRateLimited(
                "Upstream rate limit hit (429)",
                url=url,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status_code >= 400:
            raise UpstreamClientError(
                f"Upstream returned {status_code}", status_code=status_code, url=url
            )

        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except ValueError as e:
                raise MappingError(f"Invalid JSON from {url}: {e}") from e
        return response.text


def quran_client(**kwargs) -> UpstreamClient:
    return UpstreamClient(settings.quran_api_base_url, **kwargs)


def aladhan_client(**kwargs) -> UpstreamClient:
    return UpstreamClient(settings.aladhan_api_base_url, **kwargs)


def sunnah_client(**kwargs) -> UpstreamClient:
    headers = {"X-API-Key": settings.sunnah_api_key} if settings.sunnah_api_key else {}
    return UpstreamClient(settings.sunnah_api_base_url, headers=headers, **kwargs)


def scraper_client(**kwargs) -> UpstreamClient:
    kwargs.setdefault("timeout", 20.0)
    return UpstreamClient(
        headers={"Accept": "text/html,application/xhtml+xml"}, **kwargs
    )
