"""
Health checking for freshly started instances.
Polls an instance's liveness endpoint with bounded retries and a fixed delay.
"""

import aiohttp
import asyncio
import time
import logging
from typing import Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckConfig:
    path: str = "/ping"
    retries: int = 10
    interval_seconds: float = 2.0
    timeout_seconds: float = 2.0


@dataclass
class HealthStatus:
    is_healthy: bool
    attempts: int = 0
    status_code: Optional[int] = None  # None when no attempt got a response
    response_time_ms: float = 0.0
    last_check: float = 0.0

    @property
    def exhausted(self) -> bool:
        return not self.is_healthy and self.status_code is None


class HealthChecker:
    def __init__(self, config: Optional[HealthCheckConfig] = None, metrics=None):
        self.config = config or HealthCheckConfig()
        self.metrics = metrics
        self.session: Optional[aiohttp.ClientSession] = None
        self._owns_session = False

    async def start(self):
        """Open the shared HTTP session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            )
            self._owns_session = True
            logger.info("Health checker started")

    async def stop(self):
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None
        self._owns_session = False
        logger.info("Health checker stopped")

    async def health_check(self, host: str, port: int) -> bool:
        status = await self.probe(host, port)
        return status.is_healthy

    async def probe(self, host: str, port: int) -> HealthStatus:
        """Poll http://host:port/<path> until it answers or retries run out.

        Transport errors and timeouts count as "not up yet". The first HTTP
        response decides: 2xx is healthy, anything else is not.
        """
        if self.session is None:
            await self.start()

        url = f"http://{host}:{port}{self.config.path}"
        status = HealthStatus(is_healthy=False)

        for attempt in range(1, self.config.retries + 1):
            await asyncio.sleep(self.config.interval_seconds)
            status.attempts = attempt
            status.last_check = time.time()
            start_time = time.time()
            status_code = await self._perform_http_check(url)
            status.response_time_ms = (time.time() - start_time) * 1000
            if status_code is None:
                continue

            status.status_code = status_code
            status.is_healthy = 200 <= status_code < 300
            break

        self._record(status)
        if status.is_healthy:
            logger.info(f"{host}:{port} healthy after {status.attempts} attempt(s)")
        elif status.exhausted:
            logger.warning(f"{host}:{port} did not respond after {status.attempts} attempts")
        else:
            logger.warning(f"{host}:{port} answered {status.status_code} on {url}")
        return status

    async def _perform_http_check(self, url: str) -> Optional[int]:
        """Return the response status, or None if the request itself failed."""
        try:
            async with self.session.get(
                url,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
                allow_redirects=False,
            ) as response:
                return response.status
        except asyncio.TimeoutError:
            logger.debug(f"Health check timeout for {url}")
            return None
        except aiohttp.ClientError as e:
            logger.debug(f"Health check connection error for {url}: {e}")
            return None

    def _record(self, status: HealthStatus):
        if self.metrics is None:
            return
        if status.is_healthy:
            outcome = "healthy"
        elif status.exhausted:
            outcome = "exhausted"
        else:
            outcome = "unhealthy"
        self.metrics.record_health_check(outcome)
