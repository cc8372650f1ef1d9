import threading
from pathlib import Path

import pytest

from provchestra.appconfig import InMemoryAppConfig
from provchestra.config import DeploymentConfig
from provchestra.credentials import CredentialProvider, StaticTokenSource
from provchestra.datastore import InMemoryDataStore
from provchestra.pipeline import RetryPolicy, StepContext
from provchestra.readiness import ReadinessPoller
from provchestra.resolver import OutputResolver
from provchestra.schemas import DeploymentOutputs


ADMIN_OBJECT_ID = "3f2504e0-4f89-41d3-9a0c-0305e82c3301"

SCHEMA_SQL = """\
IF NOT EXISTS (SELECT * FROM sys.tables WHERE name = 'Customers')
CREATE TABLE Customers (Id INT PRIMARY KEY, Name NVARCHAR(100));
GO
IF OBJECT_ID('dbo.Orders') IS NULL
CREATE TABLE dbo.Orders (Id INT PRIMARY KEY, CustomerId INT);
GO
"""

PROCEDURE_SQL = """\
CREATE PROCEDURE dbo.GetCustomers
AS
SELECT Id, Name FROM Customers;
"""


class FakeClock:
    """Monotonic clock whose sleep() advances time instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_config_data(tmp_path: Path, **parameters) -> dict:
    schema_file = tmp_path / "schema.sql"
    schema_file.write_text(SCHEMA_SQL)
    procedures_dir = tmp_path / "procedures"
    procedures_dir.mkdir(exist_ok=True)
    (procedures_dir / "GetCustomers.sql").write_text(PROCEDURE_SQL)

    params = {
        "location": "eastus",
        "baseName": "demo",
        "adminObjectId": ADMIN_OBJECT_ID,
        "adminLogin": "admin@contoso.com",
        "clientIpAddress": "203.0.113.10",
        "deployGenAI": True,
        "deploySearch": False,
    }
    params.update(parameters)
    return {
        "deployment": {"name": "demo-deployment", "resource_group": "rg-demo"},
        "parameters": params,
        "post_deploy": {
            "schema_file": str(schema_file),
            "procedures_dir": str(procedures_dir),
        },
        "retry": {"max_attempts": 3, "backoff_seconds": 1, "backoff_multiplier": 2.0},
        "readiness": {"max_wait_seconds": 60, "poll_interval_seconds": 5},
        "logging": {"output": str(tmp_path / "logs" / "provchestra.log"), "console": False},
        "run_store": {"path": str(tmp_path / "store")},
    }


@pytest.fixture
def make_config_dict(tmp_path):
    """Factory for raw configuration data; keyword arguments override parameters."""
    def factory(**parameters) -> dict:
        return make_config_data(tmp_path, **parameters)
    return factory


@pytest.fixture
def make_config(tmp_path):
    """Factory for a valid DeploymentConfig; keyword arguments override parameters."""
    def factory(**parameters) -> DeploymentConfig:
        return DeploymentConfig.from_dict(make_config_data(tmp_path, **parameters))
    return factory


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def retry_policy(clock):
    return RetryPolicy(max_attempts=3, backoff_seconds=1.0, sleep=clock.sleep)


@pytest.fixture
def poller(clock):
    return ReadinessPoller(
        max_wait_seconds=60,
        poll_interval_seconds=5,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def full_outputs():
    """Outputs of a deployment with both optional modules included."""
    return DeploymentOutputs(
        {
            "managedIdentityName": "demo-identity",
            "managedIdentityClientId": "11111111-1111-1111-1111-111111111111",
            "managedIdentityPrincipalId": "22222222-2222-2222-2222-222222222222",
            "sqlServerName": "demo-sql",
            "sqlServerFqdn": "demo-sql.database.windows.net",
            "sqlDatabaseName": "demodb",
            "webAppName": "demo-app",
            "webAppUrl": "https://demo-app.azurewebsites.net",
            "openAIName": "demo-openai",
            "openAIEndpoint": "https://demo-openai.openai.azure.com/",
            "openAIDeploymentName": "chat",
            "searchName": "demo-search",
            "searchEndpoint": "https://demo-search.search.windows.net",
        },
        included_modules={"genai", "search"},
    )


@pytest.fixture
def core_outputs(full_outputs):
    """Outputs of a deployment with no optional modules."""
    optional = {"openAIName", "openAIEndpoint", "openAIDeploymentName", "searchName", "searchEndpoint"}
    return DeploymentOutputs({k: v for k, v in full_outputs.items() if k not in optional})


@pytest.fixture
def make_context(config, poller, clock):
    """Factory for a StepContext over in-memory clients."""
    def factory(outputs, data_store=None, app_config=None, token_source=None, step_config=None):
        return StepContext(
            resolver=OutputResolver(outputs),
            credentials=CredentialProvider(token_source or StaticTokenSource(clock=clock), clock=clock),
            data_store=data_store if data_store is not None else InMemoryDataStore(),
            app_config=app_config if app_config is not None else InMemoryAppConfig(),
            poller=poller,
            config=step_config or config,
            cancel=threading.Event(),
        )
    return factory
