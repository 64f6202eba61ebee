"""
Smoke Suite - Fixed functional checks run after a step is healthy

Checks (in order):
1. health                 GET  <health_url>                          200, status UP
2. realm                  GET  /realms/<realm>                        200
3. admin_login            POST /realms/<realm>/protocol/openid-connect/token
4. realm_listing          GET  /admin/realms                          non-empty list
5. user_listing           GET  /admin/realms/<realm>/users            list
6. client_listing         GET  /admin/realms/<realm>/clients          non-empty list
7. provider_registration  GET  /admin/serverinfo                      providers present

Admin checks reuse the token from admin_login; without it they fail with
SMOKE_NO_TOKEN rather than being silently skipped.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from .health import HealthCheckResult, http_health_check

logger = logging.getLogger(__name__)


@dataclass
class SmokeReport:
    results: List[HealthCheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def failures(self) -> List[HealthCheckResult]:
        return [r for r in self.results if not r.passed]

    def summary(self) -> str:
        ok = sum(1 for r in self.results if r.passed)
        return f"{ok}/{len(self.results)} smoke checks passed"

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "results": [r.to_dict() for r in self.results]}


class SmokeSuite:
    """Runs the fixed smoke checks against one service instance."""

    def __init__(
        self,
        service_url: str,
        health_url: str,
        realm: str = "master",
        admin_user: str = "admin",
        admin_password: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.base = service_url.rstrip("/")
        self.health_url = health_url
        self.realm = realm
        self.admin_user = admin_user
        self.admin_password = admin_password
        # Shared clients belong to the caller; otherwise each run opens and closes its own
        self.shared_client = client
        self.client: Optional[httpx.Client] = client
        self.timeout = timeout
        self._token: Optional[str] = None

    def run(self) -> SmokeReport:
        if self.shared_client is not None:
            return self._run_checks()
        with httpx.Client() as client:
            self.client = client
            try:
                return self._run_checks()
            finally:
                self.client = None

    def _run_checks(self) -> SmokeReport:
        self._token = None
        checks: List[Callable[[], HealthCheckResult]] = [
            self._check_health,
            self._check_realm,
            self._check_admin_login,
            self._check_realm_listing,
            self._check_user_listing,
            self._check_client_listing,
            self._check_providers,
        ]

        report = SmokeReport()
        for check in checks:
            result = check()
            report.results.append(result)
            if result.passed:
                logger.info(f"[smoke] {result.name}: {result.message}")
            else:
                logger.warning(f"[smoke] {result.name} FAILED: {result.message}")
        return report

    def _check_health(self) -> HealthCheckResult:
        return http_health_check(self.health_url, timeout=self.timeout, client=self.client, name="health")

    def _check_realm(self) -> HealthCheckResult:
        return self._get_json("realm", f"/realms/{self.realm}", auth=False, validate=lambda body: isinstance(body, dict) and body.get("realm") == self.realm)

    def _check_admin_login(self) -> HealthCheckResult:
        name = "admin_login"
        if not self.admin_password:
            return HealthCheckResult(name, False, "No admin password configured", error_code="SMOKE_NO_CREDENTIALS")

        url = f"{self.base}/realms/{self.realm}/protocol/openid-connect/token"
        try:
            response = self.client.post(
                url,
                data={
                    "grant_type": "password",
                    "client_id": "admin-cli",
                    "username": self.admin_user,
                    "password": self.admin_password,
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            return HealthCheckResult(name, False, f"Token request failed: {e}", error_code="SMOKE_UNREACHABLE")

        if response.status_code != 200:
            return HealthCheckResult(
                name, False,
                f"Token endpoint returned {response.status_code}",
                error_code=f"SMOKE_HTTP_{response.status_code}",
            )

        token = _json_or_none(response)
        token = token.get("access_token") if isinstance(token, dict) else None
        if not token:
            return HealthCheckResult(name, False, "Token response has no access_token", error_code="SMOKE_BAD_RESPONSE")

        self._token = token
        return HealthCheckResult(name, True, f"Obtained admin token for {self.admin_user}")

    def _check_realm_listing(self) -> HealthCheckResult:
        return self._get_json("realm_listing", "/admin/realms", validate=lambda body: isinstance(body, list) and len(body) > 0)

    def _check_user_listing(self) -> HealthCheckResult:
        return self._get_json("user_listing", f"/admin/realms/{self.realm}/users?max=1", validate=lambda body: isinstance(body, list))

    def _check_client_listing(self) -> HealthCheckResult:
        return self._get_json("client_listing", f"/admin/realms/{self.realm}/clients", validate=lambda body: isinstance(body, list) and len(body) > 0)

    def _check_providers(self) -> HealthCheckResult:
        return self._get_json("provider_registration", "/admin/serverinfo", validate=lambda body: isinstance(body, dict) and bool(body.get("providers")))

    def _get_json(self, name: str, path: str, auth: bool = True, validate: Callable[[Any], bool] = None) -> HealthCheckResult:
        headers = {}
        if auth:
            if not self._token:
                return HealthCheckResult(name, False, "No admin token (admin_login failed)", error_code="SMOKE_NO_TOKEN")
            headers["Authorization"] = f"Bearer {self._token}"

        url = self.base + path
        try:
            response = self.client.get(url, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            return HealthCheckResult(name, False, f"GET {path} failed: {e}", error_code="SMOKE_UNREACHABLE")

        if response.status_code != 200:
            return HealthCheckResult(
                name, False,
                f"GET {path} returned {response.status_code}",
                error_code=f"SMOKE_HTTP_{response.status_code}",
                details={"status": response.status_code},
            )

        body = _json_or_none(response)
        if validate is not None and not validate(body):
            return HealthCheckResult(name, False, f"GET {path} returned an unexpected body", error_code="SMOKE_BAD_RESPONSE")

        return HealthCheckResult(name, True, f"GET {path} returned 200")


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
