"""Async client for an IPFS node's HTTP API.

Upload flow
-----------
1. Build the multipart payload once; every attempt reuses it.
2. For each of ``retries`` attempts, try every auth strategy in order.
   A 403 moves straight on to the next strategy; timeouts, 5xx and
   transport errors are recorded and the next strategy is tried.
3. When a whole round fails, sleep ``2**attempt`` seconds (never after the
   last round).
4. The first 2xx response carrying a ``Hash`` wins.  The CID is resolved to
   a gateway URL and pinned; a pin failure is reported, never raised.

All failures raise ``ContentAddressUploadFailed``.  Callers treat that as
"no content address", never as a failed upload.
"""
import asyncio
import base64
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

import httpx

from weaver.config import IPFSSecrets, IPFSSettings
from weaver.errors import ContentAddressUploadFailed

from .schemas import (
    AuthStrategy,
    ContentAddressUpload,
    HealthProbe,
    HealthReport,
    PinResult,
)

logger = logging.getLogger(__name__)

USER_AGENT = "IPFS-Memory-Weaver/1.0"
DEFAULT_ORIGIN = "https://memory-weaver.local"


def build_default_strategies(
    origin: Optional[str] = DEFAULT_ORIGIN,
    api_key: Optional[str] = None,
    basic_username: Optional[str] = None,
    basic_password: Optional[str] = None,
) -> List[AuthStrategy]:
    """Default strategy order.

    Credential-bearing strategies are only included when credentials are
    configured.
    """
    strategies = [AuthStrategy(name="standard", headers={"User-Agent": USER_AGENT})]
    if origin:
        strategies.append(AuthStrategy(
            name="with_origin",
            headers={"User-Agent": USER_AGENT, "Origin": origin},
        ))
    if api_key:
        strategies.append(AuthStrategy(
            name="bearer_token",
            headers={
                "User-Agent": USER_AGENT,
                "X-API-Key": api_key,
                "Authorization": f"Bearer {api_key}",
            },
        ))
    if basic_username and basic_password:
        token = base64.b64encode(f"{basic_username}:{basic_password}".encode()).decode()
        strategies.append(AuthStrategy(
            name="basic_auth",
            headers={"User-Agent": USER_AGENT, "Authorization": f"Basic {token}"},
        ))
    strategies.append(AuthStrategy(
        name="custom_headers",
        headers={
            "User-Agent": USER_AGENT,
            "X-Forwarded-For": "127.0.0.1",
            "X-Real-IP": "127.0.0.1",
            "X-Client-Type": "memory-weaver",
        },
    ))
    return strategies


class IPFSClient:
    """Client for one IPFS node.

    Args:
        node_url:               Base URL of the node's HTTP API (port 5001).
        gateway_url:            Gateway template; ``{cid}`` is substituted,
                                otherwise the CID is appended.
        timeout:                Per-request timeout for uploads (seconds).
        health_timeout:         Per-probe timeout for the health check.
        retries:                Number of full rounds over the strategies.
        pin_files:              Pin after a successful upload.
        strategies:             Ordered auth strategies (defaults built from
                                *origin* and the credentials).
        cache_winning_strategy: Try the last successful strategy first.
        transport:              Optional httpx transport (tests).
        sleep:                  Backoff sleeper (tests).
    """

    def __init__(
        self,
        node_url: str,
        gateway_url: str = "https://ipfs.io/ipfs/{cid}",
        timeout: float = 60.0,
        health_timeout: float = 10.0,
        retries: int = 5,
        pin_files: bool = True,
        origin: Optional[str] = DEFAULT_ORIGIN,
        api_key: Optional[str] = None,
        basic_username: Optional[str] = None,
        basic_password: Optional[str] = None,
        strategies: Optional[List[AuthStrategy]] = None,
        cache_winning_strategy: bool = True,
        wrap_with_directory: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.node_url = node_url.rstrip("/")
        self.gateway_template = gateway_url
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.retries = retries
        self.pin_files = pin_files
        self.origin = origin
        self.strategies = list(strategies) if strategies else build_default_strategies(
            origin, api_key, basic_username, basic_password,
        )
        self.cache_winning_strategy = cache_winning_strategy
        self.wrap_with_directory = wrap_with_directory
        self.last_strategy: Optional[str] = None
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: IPFSSettings,
        secrets: Optional[IPFSSecrets] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "IPFSClient":
        secrets = secrets or IPFSSecrets()
        strategies = None
        if settings.strategies:
            strategies = [AuthStrategy(name=s.name, headers=s.headers) for s in settings.strategies]
        return cls(
            node_url=settings.node_url,
            gateway_url=settings.gateway_url,
            timeout=settings.timeout_seconds,
            health_timeout=settings.health_timeout_seconds,
            retries=settings.retries,
            pin_files=settings.pin_files,
            origin=settings.origin,
            api_key=secrets.api_key,
            basic_username=secrets.basic_username,
            basic_password=secrets.basic_password,
            strategies=strategies,
            cache_winning_strategy=settings.cache_winning_strategy,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.node_url,
            timeout=timeout,
            transport=self._transport,
        )

    def _ordered_strategies(self) -> List[AuthStrategy]:
        if not (self.cache_winning_strategy and self.last_strategy):
            return self.strategies
        winner = [s for s in self.strategies if s.name == self.last_strategy]
        rest = [s for s in self.strategies if s.name != self.last_strategy]
        return winner + rest

    def _add_params(self, pin: bool) -> dict:
        params = {}
        if pin:
            params["pin"] = "true"
        if self.wrap_with_directory:
            params["wrap-with-directory"] = "true"
        params["hash"] = "sha2-256"
        return params

    def gateway_url(self, cid: str) -> str:
        if "{cid}" in self.gateway_template:
            return self.gateway_template.replace("{cid}", cid)
        return f"{self.gateway_template.rstrip('/')}/{cid}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def upload(
        self,
        data: bytes,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> ContentAddressUpload:
        """Add *data* to the node and return its CID and gateway URL.

        Raises:
            ContentAddressUploadFailed: When every attempt and strategy failed.
        """
        files = {"file": (filename, data, content_type)}
        params = self._add_params(self.pin_files)
        started = time.monotonic()
        last_error: Optional[str] = None

        async with self._client(self.timeout) as client:
            for attempt in range(1, self.retries + 1):
                for strategy in self._ordered_strategies():
                    logger.debug(
                        "[ipfs] Upload attempt %d/%d using %s for %s",
                        attempt, self.retries, strategy.name, filename,
                    )
                    try:
                        response = await client.post(
                            "/api/v0/add",
                            params=params,
                            files=files,
                            headers=strategy.headers,
                        )
                    except httpx.HTTPError as exc:
                        last_error = f"{strategy.name}: {type(exc).__name__}: {exc}"
                        logger.warning("[ipfs] Strategy %s error: %s", strategy.name, exc)
                        continue

                    if response.is_success:
                        try:
                            body = response.json()
                            if not isinstance(body, dict):
                                raise ValueError(f"expected a JSON object, got {type(body).__name__}")
                            cid = body["Hash"]
                        except (ValueError, KeyError) as exc:
                            last_error = f"{strategy.name}: malformed add response: {exc}"
                            logger.warning("[ipfs] %s", last_error)
                            continue
                        return await self._finish_upload(
                            client, cid, body, strategy, attempt, started,
                        )

                    last_error = (
                        f"{strategy.name}: HTTP {response.status_code}: {response.text[:200]}"
                    )
                    logger.warning("[ipfs] Strategy %s failed: HTTP %d", strategy.name, response.status_code)

                if attempt < self.retries:
                    delay = 2 ** attempt
                    logger.info(
                        "[ipfs] All strategies failed for attempt %d; retrying in %ds",
                        attempt, delay,
                    )
                    await self._sleep(delay)

        raise ContentAddressUploadFailed(
            f"IPFS upload of {filename} failed after {self.retries} attempt(s)",
            technical_detail=last_error or "all upload strategies failed",
        )

    async def _finish_upload(
        self,
        client: httpx.AsyncClient,
        cid: str,
        body: dict,
        strategy: AuthStrategy,
        attempt: int,
        started: float,
    ) -> ContentAddressUpload:
        self.last_strategy = strategy.name
        logger.info("[ipfs] Upload succeeded with %s, CID %s", strategy.name, cid)

        pin = PinResult(pinned=False)
        if self.pin_files:
            pin = await self._pin(client, cid, strategy.headers)

        size = body.get("Size")
        return ContentAddressUpload(
            cid=cid,
            url=self.gateway_url(cid),
            size=int(size) if size is not None else None,
            pinned=pin.pinned,
            pin_error=pin.error,
            strategy=strategy.name,
            attempt=attempt,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    async def _pin(self, client: httpx.AsyncClient, cid: str, headers: dict) -> PinResult:
        try:
            response = await client.post(
                "/api/v0/pin/add",
                params={"arg": cid, "recursive": "true"},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("[ipfs] Pin of %s failed: %s", cid, exc)
            return PinResult(pinned=False, error=str(exc))
        if not response.is_success:
            logger.warning("[ipfs] Pin of %s failed: HTTP %d", cid, response.status_code)
            return PinResult(pinned=False, error=f"HTTP {response.status_code}")
        return PinResult(pinned=True)

    async def pin(self, cid: str) -> PinResult:
        """Pin *cid* on the node.  Never raises."""
        headers = self._ordered_strategies()[0].headers
        async with self._client(self.timeout) as client:
            return await self._pin(client, cid, headers)

    async def health_check(self) -> HealthReport:
        """Probe the node.  Never raises; every failure becomes a probe result."""
        report = HealthReport(
            node_url=self.node_url,
            timestamp=datetime.now(timezone.utc),
            last_strategy=self.last_strategy,
        )
        origin = self.origin or DEFAULT_ORIGIN

        async with self._client(self.health_timeout) as client:
            probe = await self._probe(client, "basic_connectivity", "GET", "/")
            probe.success = probe.status is not None and probe.status < 400
            report.probes.append(probe)
            if probe.success:
                report.accessible = True

            started = time.monotonic()
            try:
                response = await client.post(
                    "/api/v0/version",
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
                elapsed = int((time.monotonic() - started) * 1000)
                if response.is_success:
                    body = response.json()
                    if not isinstance(body, dict):
                        raise ValueError(f"expected a JSON object, got {type(body).__name__}")
                    report.version = body.get("Version")
                    report.healthy = True
                    report.probes.append(HealthProbe(
                        name="api_version", success=True, status=response.status_code,
                        elapsed_ms=elapsed, detail=report.version,
                    ))
                else:
                    report.probes.append(HealthProbe(
                        name="api_version", success=False, status=response.status_code,
                        elapsed_ms=elapsed, detail=f"HTTP {response.status_code}",
                    ))
            except (httpx.HTTPError, ValueError) as exc:
                report.probes.append(HealthProbe(
                    name="api_version", success=False, detail=str(exc),
                ))

            probe = await self._probe(
                client, "cors_preflight", "OPTIONS", "/api/v0/add",
                headers={
                    "Origin": origin,
                    "Access-Control-Request-Method": "POST",
                    "Access-Control-Request-Headers": "Content-Type",
                },
            )
            probe.success = probe.status is not None and probe.status < 400
            report.probes.append(probe)

            probe = await self._probe(
                client, "upload_endpoint", "POST", "/api/v0/add",
                headers={"User-Agent": USER_AGENT},
            )
            probe.success = probe.status is not None and probe.status != 403
            if probe.status == 403:
                probe.detail = "FORBIDDEN - Access Denied"
            report.probes.append(probe)

        logger.info(
            "[ipfs] Health check of %s: healthy=%s accessible=%s",
            self.node_url, report.healthy, report.accessible,
        )
        return report

    async def _probe(
        self,
        client: httpx.AsyncClient,
        name: str,
        method: str,
        path: str,
        headers: Optional[dict] = None,
    ) -> HealthProbe:
        started = time.monotonic()
        try:
            response = await client.request(method, path, headers=headers)
        except httpx.HTTPError as exc:
            return HealthProbe(name=name, success=False, detail=f"{type(exc).__name__}: {exc}")
        return HealthProbe(
            name=name,
            success=False,
            status=response.status_code,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            detail=f"HTTP {response.status_code}",
        )
