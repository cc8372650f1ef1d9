"""
Deployment orchestrator - wires the two phases together.

    build_graph -> Phase1Executor -> OutputResolver -> ReadinessPoller -> StepPipeline

Each stage starts only when its predecessor's guarantee holds:
- Phase 1 starts only with a validated, acyclic graph
- Phase 2 starts only with complete, immutable DeploymentOutputs
- Steps run only once the server reports ready

The RunReport is persisted after Phase 1 and after every step, so a failure
at any point leaves a report that resume() can continue from.
"""

import logging
import threading
from typing import Optional

from provchestra.appconfig import AppConfigClient, AzureCliAppConfig, InMemoryAppConfig
from provchestra.azure_cli import AzureCli
from provchestra.backend import AzureCliBackend, ProvisioningBackend, SimulatedBackend
from provchestra.config import DeploymentConfig
from provchestra.credentials import AzureCliTokenSource, CredentialProvider, StaticTokenSource
from provchestra.datastore import (
    READY_STATE,
    DatabaseTarget,
    DataStoreAdmin,
    InMemoryDataStore,
    SqlDataStoreAdmin,
    load_connection_factory,
)
from provchestra.errors import Cancelled, ConfigurationError, ProvchestraError, ProvisioningError
from provchestra.executor import Phase1Executor
from provchestra.graph_builder import build_graph
from provchestra.pipeline import ConfigurationStep, RetryPolicy, StepContext, StepPipeline
from provchestra.readiness import ProbeResult, ReadinessPoller
from provchestra.resolver import OutputResolver
from provchestra.run_store import RunStore
from provchestra.schemas import ResourceGraph, RunReport, RunStatus, StepResult
from provchestra.steps import default_steps
from provchestra.utils import sanitize_error_message

logger = logging.getLogger(__name__)

# Server states after which waiting is pointless
TERMINAL_SERVER_STATES = {"Disabled", "Dropping", "Inaccessible"}

# Reported as failed_step when the wait between the phases fails
SERVER_READINESS_STAGE = "server-readiness"


class DeploymentOrchestrator:
    """
    Run and resume two-phase deployments.

    Args:
        backend: Provisioning backend for Phase 1
        credentials: Credential provider for data-plane steps
        data_store: Database administration client
        app_config: Application settings client
        store: Run report storage
        poller: Readiness poller (default: from configuration per run)
        retry_policy: Step retry policy (default: from configuration per run)
        steps: Phase 2 steps (default: default_steps())
    """

    def __init__(
        self,
        backend: ProvisioningBackend,
        credentials: CredentialProvider,
        data_store: DataStoreAdmin,
        app_config: AppConfigClient,
        store: RunStore,
        poller: Optional[ReadinessPoller] = None,
        retry_policy: Optional[RetryPolicy] = None,
        steps: Optional[list[ConfigurationStep]] = None,
    ):
        self.backend = backend
        self.credentials = credentials
        self.data_store = data_store
        self.app_config = app_config
        self.store = store
        self.poller = poller
        self.retry_policy = retry_policy
        self.steps = steps

    @classmethod
    def simulated(cls, store: RunStore, **kwargs) -> "DeploymentOrchestrator":
        """Orchestrator with a simulated backend and in-memory clients (dry runs)."""
        return cls(
            backend=kwargs.pop("backend", None) or SimulatedBackend(),
            credentials=kwargs.pop("credentials", None) or CredentialProvider(StaticTokenSource()),
            data_store=kwargs.pop("data_store", None) or InMemoryDataStore(),
            app_config=kwargs.pop("app_config", None) or InMemoryAppConfig(),
            store=store,
            **kwargs,
        )

    @classmethod
    def for_azure(cls, config: DeploymentConfig, store: RunStore, cli: Optional[AzureCli] = None) -> "DeploymentOrchestrator":
        """
        Orchestrator that provisions and configures real Azure resources.

        Raises:
            ConfigurationError: If the resource group or the SQL connection
                factory is not configured
        """
        if not config.resource_group:
            raise ConfigurationError("deployment.resource_group is required to deploy to Azure")
        if not config.post_deploy.connection_factory:
            raise ConfigurationError(
                "post_deploy.connection_factory is required to configure the database "
                "(e.g. 'mypackage.sql:connect')"
            )
        cli = cli or AzureCli(subscription=config.get("subscriptionId"))
        return cls(
            backend=AzureCliBackend(cli, config.resource_group),
            credentials=CredentialProvider(AzureCliTokenSource(cli)),
            data_store=SqlDataStoreAdmin(load_connection_factory(config.post_deploy.connection_factory), cli),
            app_config=AzureCliAppConfig(cli, config.resource_group),
            store=store,
        )

    def run(self, config: DeploymentConfig, cancel: Optional[threading.Event] = None) -> RunReport:
        """
        Run both phases for a configuration.

        Returns:
            The final RunReport (also persisted)

        Raises:
            ConfigurationError: Invalid configuration (no run is recorded)
            CyclicDependencyError: Invalid graph (no run is recorded)
        """
        config.validate()
        graph = build_graph(config)
        report = self.store.create_run(config.name, config.public_parameters())
        logger.info(f"Starting run {report.run_id} for {config.name}", extra={"run_id": report.run_id})
        return self._execute(config, graph, report, cancel or threading.Event())

    def resume(self, run_id: str, config: DeploymentConfig, cancel: Optional[threading.Event] = None) -> RunReport:
        """
        Continue a failed or interrupted run.

        Phase 1 outputs are reused when the prior run completed Phase 1 with
        the same optional modules; Phase 2 restarts at the first step that
        did not succeed.

        Raises:
            ConfigurationError: Unknown run, already succeeded, or a
                different deployment
        """
        prior = self.store.get(run_id)
        if prior is None:
            raise ConfigurationError(f"Run not found: {run_id}")
        if prior.status == RunStatus.SUCCEEDED:
            raise ConfigurationError(f"Run {run_id} already succeeded; start a new run instead")
        if prior.deployment_name != config.name:
            raise ConfigurationError(
                f"Run {run_id} belongs to deployment '{prior.deployment_name}', not '{config.name}'"
            )

        config.validate()
        graph = build_graph(config)
        report = self.store.create_run(config.name, config.public_parameters(), resumed_from=run_id)
        logger.info(
            f"Resuming run {run_id} as {report.run_id} (previous status {prior.status.value})",
            extra={"run_id": report.run_id},
        )

        prior_results: Optional[list[StepResult]] = None
        if prior.phase1_complete and prior.outputs.included_modules == graph.included_modules:
            report.outputs = prior.outputs
            report.node_status = dict(prior.node_status)
            report.backend_run_id = prior.backend_run_id
            prior_results = prior.step_results
        elif prior.phase1_complete:
            logger.warning("Optional modules changed since the previous run; re-running Phase 1")

        return self._execute(config, graph, report, cancel or threading.Event(), prior_results)

    def _execute(
        self,
        config: DeploymentConfig,
        graph: ResourceGraph,
        report: RunReport,
        cancel: threading.Event,
        prior_results: Optional[list[StepResult]] = None,
    ) -> RunReport:
        # Tokens never outlive a run
        self.credentials.invalidate()

        if not report.phase1_complete:
            if cancel.is_set():
                return self._finish(report, RunStatus.CANCELLED, error={"component": "phase1", "type": "Cancelled"})
            try:
                phase1 = Phase1Executor(self.backend).execute(graph, config.parameters, config.name)
            except ProvisioningError as e:
                report.node_status = e.node_status
                report.backend_run_id = e.run_id
                return self._finish(report, RunStatus.PHASE1_FAILED, error={
                    "component": "phase1",
                    "type": type(e).__name__,
                    "message": sanitize_error_message(e),
                    "diagnostics": e.diagnostics,
                })
            except Cancelled as e:
                return self._finish(report, RunStatus.CANCELLED, error=_error_detail("phase1", e))
            except ProvchestraError as e:
                return self._finish(report, RunStatus.PHASE1_FAILED, error={
                    **_error_detail("phase1", e),
                    "diagnostics": [{"code": type(e).__name__, "message": sanitize_error_message(e)}],
                })
            report.outputs = phase1.outputs
            report.node_status = phase1.node_status
            report.backend_run_id = phase1.backend_run_id
            self.store.save(report)

        resolver = OutputResolver(report.outputs)
        poller = self.poller or ReadinessPoller.from_settings(config.readiness)

        try:
            self._wait_for_server(config, resolver, poller, cancel)
        except Cancelled as e:
            return self._finish(
                report,
                RunStatus.CANCELLED,
                failed_step=SERVER_READINESS_STAGE,
                error=_error_detail("readiness", e),
            )
        except ProvchestraError as e:
            return self._finish(
                report,
                RunStatus.PHASE2_FAILED,
                failed_step=SERVER_READINESS_STAGE,
                error={**_error_detail("readiness", e), "step": SERVER_READINESS_STAGE},
            )

        ctx = StepContext(
            resolver=resolver,
            credentials=self.credentials,
            data_store=self.data_store,
            app_config=self.app_config,
            poller=poller,
            config=config,
            cancel=cancel,
        )
        pipeline = StepPipeline(
            self.steps if self.steps is not None else default_steps(),
            self.retry_policy or RetryPolicy.from_settings(config.retry),
        )

        report.step_results = []

        def persist(result: StepResult) -> None:
            report.step_results.append(result)
            self.store.save(report)

        logger.info(f"Phase 2: {len(pipeline.steps)} configuration steps", extra={"run_id": report.run_id})
        outcome = pipeline.run(ctx, prior_results=prior_results, on_result=persist)

        if outcome.success:
            return self._finish(report, RunStatus.SUCCEEDED)
        error = {"component": "phase2", "step": outcome.failed_step, **(outcome.error or {})}
        if outcome.cancelled:
            return self._finish(report, RunStatus.CANCELLED, failed_step=outcome.failed_step, error=error)
        return self._finish(report, RunStatus.PHASE2_FAILED, failed_step=outcome.failed_step, error=error)

    def _wait_for_server(
        self,
        config: DeploymentConfig,
        resolver: OutputResolver,
        poller: ReadinessPoller,
        cancel: threading.Event,
    ) -> None:
        server = resolver.get_optional("sqlServerName")
        if not server:
            return
        target = DatabaseTarget(
            server_name=server.value,
            server_fqdn=resolver.get_optional("sqlServerFqdn").or_default(""),
            database=resolver.get_optional("sqlDatabaseName").or_default(""),
            resource_group=config.resource_group,
        )

        def probe() -> ProbeResult:
            state = self.data_store.server_state(target)
            if state == READY_STATE:
                return ProbeResult.READY
            if state in TERMINAL_SERVER_STATES:
                return ProbeResult.ERROR
            return ProbeResult.NOT_READY

        poller.wait(f"server {target.server_name}", probe, cancel)

    def _finish(
        self,
        report: RunReport,
        status: RunStatus,
        failed_step: Optional[str] = None,
        error: Optional[dict] = None,
    ) -> RunReport:
        report.finish(status, failed_step=failed_step, error=error)
        self.store.save(report)
        if status == RunStatus.SUCCEEDED:
            logger.info(f"Run {report.run_id} succeeded", extra={"run_id": report.run_id})
        else:
            where = f" at {failed_step}" if failed_step else ""
            logger.error(f"Run {report.run_id} finished {status.value}{where}", extra={"run_id": report.run_id})
        return report


def _error_detail(component: str, error: Exception) -> dict:
    return {
        "component": component,
        "type": type(error).__name__,
        "message": sanitize_error_message(error),
    }
