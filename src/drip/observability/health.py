"""Health check endpoints for DRIP faucet.

Endpoints:
- /healthcheck: Container health probe (200 if chain reachable and funded)
- /health: Process liveness (200 if process is alive)
- /ready: Readiness probe (health checks plus readiness-only checks such
  as the chat connection)
- /metrics: Prometheus metrics endpoint

With a faucet service attached and local requests enabled:
- POST /faucet/request/{address}: Request a disbursement without chat
- GET /faucet/jobs/{job_id}: Status of a previously accepted request
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from aiohttp import web
from prometheus_client import REGISTRY, generate_latest

logger = logging.getLogger(__name__)

class HealthStatus(Enum):
    """Health check status values."""

    OK = "ok"
    ERROR = "error"
    NOT_READY = "not_ready"


@dataclass
class CheckResult:
    """Result of a single health check."""

    name: str
    status: HealthStatus
    message: str | None = None


@dataclass
class HealthResult:
    """Combined health check result."""

    status: HealthStatus
    checks: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        result = {"status": self.status.value}
        if self.checks:
            result["checks"] = self.checks
        return result


class HealthCheck(ABC):
    """Abstract base class for health checks."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of the health check."""
        ...

    @abstractmethod
    async def check(self) -> CheckResult:
        """Perform the health check.

        Returns
        -------
        CheckResult
            The result of the health check.
        """
        ...


def _http_status(outcome) -> int:
    """HTTP status for a request API outcome."""
    # drip.faucet imports this module for its health checks
    from drip.faucet.models import AdmissionVerdict, OutcomeStatus

    if outcome.status == OutcomeStatus.REJECTED:
        if outcome.decision is None or outcome.decision.accepted:
            return 503
        if outcome.decision.verdict == AdmissionVerdict.REJECTED_INVALID_ADDRESS:
            return 400
        return 429
    if outcome.status == OutcomeStatus.CONFIRMED:
        return 200
    if outcome.status == OutcomeStatus.PENDING:
        return 202
    return 502


class HealthServer:
    """HTTP server for health, metrics and the local request API.

    Parameters
    ----------
    host : str
        Host to bind to.
    port : int
        Port to bind to.
    service : FaucetService | None
        Faucet facade serving the request API.
    requests_enabled : bool
        Expose the request API routes.
    """

    # Default to 0.0.0.0 to allow external access in containerized environments.
    # Container probes and Prometheus scraping require the server to be accessible
    # from outside the container. Override with host="127.0.0.1" for local-only access.
    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8111,
        service=None,
        requests_enabled: bool = False,
    ):
        self._host = host
        self._port = port
        self._service = service
        self._requests_enabled = requests_enabled
        self._checks: list[HealthCheck] = []
        self._readiness_checks: list[HealthCheck] = []
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def add_check(self, check: HealthCheck, readiness_only: bool = False) -> None:
        """Add a health check.

        Parameters
        ----------
        check : HealthCheck
            The health check to add.
        readiness_only : bool
            Gate only /ready on this check; /healthcheck ignores it.
        """
        if readiness_only:
            self._readiness_checks.append(check)
        else:
            self._checks.append(check)

    def build_app(self) -> web.Application:
        """Create the aiohttp application with all routes registered."""
        app = web.Application()
        app.router.add_get("/healthcheck", self._handle_healthcheck)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/ready", self._handle_ready)
        app.router.add_get("/metrics", self._handle_metrics)

        if self._service is not None and self._requests_enabled:
            app.router.add_post("/faucet/request/{address}", self._handle_request)
            app.router.add_get("/faucet/jobs/{job_id}", self._handle_job)
        return app

    async def start(self) -> None:
        """Start the health server."""
        self._app = self.build_app()

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        logger.info(
            "Health server started",
            extra={
                "host": self._host,
                "port": self._port,
                "requests_enabled": self._service is not None and self._requests_enabled,
            },
        )

    async def stop(self) -> None:
        """Stop the health server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("Health server stopped")

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Handle /health endpoint (liveness probe)."""
        return web.json_response({"status": "ok"})

    async def _handle_healthcheck(self, _request: web.Request) -> web.Response:
        """Handle /healthcheck endpoint (chain and funding)."""
        result = await self._run_checks(self._checks)

        status_code = 200 if result.status == HealthStatus.OK else 503
        return web.json_response(result.to_dict(), status=status_code)

    async def _handle_ready(self, _request: web.Request) -> web.Response:
        """Handle /ready endpoint (readiness probe)."""
        result = await self._check_readiness()

        status_code = 200 if result.status == HealthStatus.OK else 503
        return web.json_response(result.to_dict(), status=status_code)

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Handle /metrics endpoint (Prometheus)."""
        metrics = generate_latest(REGISTRY)
        return web.Response(
            body=metrics,
            content_type="text/plain",
            charset="utf-8",
        )

    async def _handle_request(self, request: web.Request) -> web.Response:
        """Handle POST /faucet/request/{address}."""
        address = request.match_info["address"]
        requester = request.headers.get("X-Requester") or request.remote or "anonymous"

        outcome = await self._service.request_disbursement(requester, address)

        status_code = _http_status(outcome)

        headers = {}
        if outcome.retry_after is not None:
            headers["Retry-After"] = str(outcome.retry_after)
        return web.json_response(outcome.to_dict(), status=status_code, headers=headers)

    async def _handle_job(self, request: web.Request) -> web.Response:
        """Handle GET /faucet/jobs/{job_id}."""
        outcome = self._service.get_job_status(request.match_info["job_id"])
        if outcome is None:
            return web.json_response({"status": "not_found"}, status=404)
        return web.json_response(outcome.to_dict())

    async def _check_readiness(self) -> HealthResult:
        """Run all readiness checks.

        Returns
        -------
        HealthResult
            Combined result of all checks.
        """
        return await self._run_checks(self._checks + self._readiness_checks)

    async def _run_checks(self, to_run: list[HealthCheck]) -> HealthResult:
        if not to_run:
            return HealthResult(status=HealthStatus.OK)

        checks: dict[str, str] = {}
        all_ok = True

        for check in to_run:
            try:
                result = await check.check()
                if result.status == HealthStatus.OK:
                    checks[result.name] = "ok"
                else:
                    checks[result.name] = result.message or "error"
                    all_ok = False
            except Exception as e:
                # Re-raise system-level exceptions
                if isinstance(e, (KeyboardInterrupt, SystemExit)):
                    raise
                logger.exception("Health check failed", extra={"check": check.name})
                checks[check.name] = f"error: {type(e).__name__}: {e}"
                all_ok = False

        return HealthResult(
            status=HealthStatus.OK if all_ok else HealthStatus.NOT_READY,
            checks=checks,
        )
