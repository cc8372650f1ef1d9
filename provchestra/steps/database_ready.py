"""Wait until the database accepts connections."""

import logging
from typing import Any

from provchestra.credentials import SQL_AUDIENCE
from provchestra.pipeline import DATABASE_OUTPUTS, ConfigurationStep, StepContext
from provchestra.readiness import ProbeResult

logger = logging.getLogger(__name__)


class WaitForDatabaseStep(ConfigurationStep):
    """
    Poll the database with a lightweight connection probe.

    The poller owns waiting and timeouts, so the step itself is not retried.
    """

    name = "wait-for-database"
    idempotency = "read-only"
    requires = DATABASE_OUTPUTS
    after = ("grant-firewall-access",)
    max_attempts = 1

    def apply(self, ctx: StepContext) -> dict[str, Any]:
        target = ctx.database_target()

        def probe() -> ProbeResult:
            # acquire() serves the cached token until it nears expiry
            token = ctx.credentials.acquire(SQL_AUDIENCE)
            if ctx.data_store.ping(target, token):
                return ProbeResult.READY
            return ProbeResult.NOT_READY

        result = ctx.poller.wait(f"database {target.database}", probe, ctx.cancel)
        return {"probes": result.probes, "elapsed_seconds": round(result.elapsed_seconds, 1)}
