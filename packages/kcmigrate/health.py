"""
Health Prober - Is the freshly deployed (or restored) service alive?

Single probes:
- http_health_check: HTTP GET, expects 200 and, for JSON bodies with a
  "status" field, status UP
- tcp_port_check: TCP connect

Polling:
- HealthProber.wait_until_healthy: bounded attempts with exponential backoff
  (initial_delay * 2^n, capped at max_delay) inside an overall deadline

Error Codes (normalized):
- HEALTH_HTTP_XXX: Unexpected HTTP status (e.g., HEALTH_HTTP_503)
- HEALTH_STATUS_DOWN: 200 but the body reports a non-UP status
- HEALTH_TIMEOUT: Request timeout
- HEALTH_CONNECTION_REFUSED: Connection refused / unreachable
- HEALTH_PORT_CLOSED: TCP port not listening
- HEALTH_DEADLINE_EXCEEDED: Polling gave up
"""

import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """Health check result."""
    name: str
    passed: bool
    message: str
    error_code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


def http_health_check(
    url: str,
    timeout: float = 5.0,
    client: Optional[httpx.Client] = None,
    expect_status: int = 200,
    name: str = "http_health",
) -> HealthCheckResult:
    """
    Check an HTTP health endpoint once.

    Args:
        url: Full health URL
        timeout: Request timeout in seconds
        client: Optional shared httpx.Client (tests pass one with a MockTransport)
        expect_status: Status code that counts as healthy

    Returns:
        HealthCheckResult
    """
    try:
        if client is not None:
            response = client.get(url, timeout=timeout, follow_redirects=True)
        else:
            response = httpx.get(url, timeout=timeout, follow_redirects=True)
    except httpx.TimeoutException:
        return HealthCheckResult(
            name=name,
            passed=False,
            message=f"HTTP {url} timed out after {timeout}s",
            error_code="HEALTH_TIMEOUT",
            details={"url": url, "timeout": timeout},
        )
    except httpx.HTTPError as e:
        return HealthCheckResult(
            name=name,
            passed=False,
            message=f"HTTP {url} unreachable: {e}",
            error_code="HEALTH_CONNECTION_REFUSED",
            details={"url": url, "error": str(e)},
        )

    if response.status_code != expect_status:
        return HealthCheckResult(
            name=name,
            passed=False,
            message=f"HTTP {url} returned {response.status_code}, expected {expect_status}",
            error_code=f"HEALTH_HTTP_{response.status_code}",
            details={"status": response.status_code, "expected": expect_status, "url": url},
        )

    status = _body_status(response)
    if status is not None and status != "UP":
        return HealthCheckResult(
            name=name,
            passed=False,
            message=f"HTTP {url} reports status {status}",
            error_code="HEALTH_STATUS_DOWN",
            details={"status": response.status_code, "body_status": status, "url": url},
        )

    return HealthCheckResult(
        name=name,
        passed=True,
        message=f"HTTP {url} returned {response.status_code}",
        details={"status": response.status_code, "url": url},
    )


def _body_status(response: httpx.Response) -> Optional[str]:
    if "json" not in response.headers.get("content-type", ""):
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and "status" in body:
        return str(body["status"]).upper()
    return None


def tcp_port_check(host: str, port: int, timeout: float = 5.0, name: str = "tcp_port") -> HealthCheckResult:
    """Check that a TCP port accepts connections."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except socket.timeout:
        return HealthCheckResult(
            name=name,
            passed=False,
            message=f"TCP {host}:{port} timed out after {timeout}s",
            error_code="HEALTH_TIMEOUT",
            details={"host": host, "port": port},
        )
    except OSError as e:
        return HealthCheckResult(
            name=name,
            passed=False,
            message=f"TCP {host}:{port} not reachable: {e}",
            error_code="HEALTH_PORT_CLOSED",
            details={"host": host, "port": port, "error": str(e)},
        )

    return HealthCheckResult(
        name=name,
        passed=True,
        message=f"TCP {host}:{port} is open",
        details={"host": host, "port": port},
    )


class HealthProber:
    """
    Polls a probe until it passes, attempts run out, or the deadline passes.

    sleep and clock are injectable so tests run instantly.
    """

    def __init__(
        self,
        retries: int = 5,
        initial_delay: float = 5.0,
        max_delay: float = 60.0,
        timeout: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retries = retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, migration, **kwargs) -> "HealthProber":
        """Build from a profile's MigrationSettings."""
        return cls(
            retries=migration.health_retries,
            initial_delay=migration.health_initial_delay,
            max_delay=migration.health_max_delay,
            timeout=migration.health_timeout,
            **kwargs,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based)."""
        return min(self.initial_delay * (2 ** attempt), self.max_delay)

    def wait_until_healthy(self, probe: Callable[[], HealthCheckResult]) -> HealthCheckResult:
        """
        Run probe with retries.

        Returns:
            The passing result, or the last failure with error_code preserved
            and details["attempts"] set
        """
        started = self._clock()
        result = None

        for attempt in range(self.retries):
            result = probe()
            result.details["attempts"] = attempt + 1
            if result.passed:
                if attempt:
                    logger.info(f"Health probe passed after {attempt + 1} attempts")
                return result

            logger.warning(f"Health probe attempt {attempt + 1}/{self.retries} failed: {result.message}")
            if attempt + 1 == self.retries:
                break

            delay = self.delay_for(attempt)
            if self._clock() - started + delay > self.timeout:
                result.details["deadline_exceeded"] = True
                result.message = f"{result.message} (health deadline of {self.timeout}s exceeded)"
                if not result.error_code:
                    result.error_code = "HEALTH_DEADLINE_EXCEEDED"
                return result
            self._sleep(delay)

        return result
