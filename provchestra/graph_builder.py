"""
Resource Graph Builder - configuration to ResourceGraph.

The builder renders a catalog of node templates against a DeploymentConfig:
- Core nodes are always included
- Nodes of an optional module are included only when its feature flag is on
- Soft dependencies on excluded nodes are dropped and recorded as absent,
  so e.g. the web app is still created without the AI endpoints
- Role assignments belong to the module they wire, so they disappear with it

Validation happens here, before anything is submitted:
- Required parameters and the admin object id format
- Platform naming rules per resource kind (lowercase, length, characters)
- Referential integrity and acyclicity of the dependency edges

build_graph() is a pure function of its inputs.
"""

import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from provchestra.config import DeploymentConfig, GUID_PATTERN, MODULE_FLAGS, REQUIRED_PARAMETERS
from provchestra.errors import ConfigurationError
from provchestra.schemas import ResourceGraph, ResourceNode


# Resource kinds
IDENTITY = "Microsoft.ManagedIdentity/userAssignedIdentities"
SQL_SERVER = "Microsoft.Sql/servers"
SQL_DATABASE = "Microsoft.Sql/servers/databases"
APP_PLAN = "Microsoft.Web/serverfarms"
WEB_APP = "Microsoft.Web/sites"
OPENAI_ACCOUNT = "Microsoft.CognitiveServices/accounts"
OPENAI_DEPLOYMENT = "Microsoft.CognitiveServices/accounts/deployments"
SEARCH_SERVICE = "Microsoft.Search/searchServices"
ROLE_ASSIGNMENT = "Microsoft.Authorization/roleAssignments"

# Built-in role definition ids
OPENAI_USER_ROLE = "5e0bd9bd-7b93-4f28-af87-19fc36ad61bd"
SEARCH_INDEX_READER_ROLE = "1407120a-92aa-4202-b7e9-c0e197c71c8f"


@dataclass(frozen=True)
class NamingRule:
    """Platform naming constraint for a resource kind."""
    min_length: int
    max_length: int
    pattern: re.Pattern
    description: str

    def check(self, kind: str, name: str) -> None:
        if name != name.lower():
            raise ConfigurationError(f"{kind} name '{name}' must be lowercase")
        if not self.min_length <= len(name) <= self.max_length:
            raise ConfigurationError(
                f"{kind} name '{name}' must be {self.min_length}-{self.max_length} "
                f"characters (got {len(name)})"
            )
        if not self.pattern.match(name):
            raise ConfigurationError(f"{kind} name '{name}' is invalid: {self.description}")


_HYPHENATED = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")

NAMING_RULES: dict[str, NamingRule] = {
    IDENTITY: NamingRule(
        3, 128, re.compile(r"^[a-z0-9][a-z0-9_-]*$"),
        "letters, digits, hyphens and underscores; must start with a letter or digit",
    ),
    SQL_SERVER: NamingRule(
        1, 63, _HYPHENATED,
        "letters, digits and hyphens; cannot start or end with a hyphen",
    ),
    SQL_DATABASE: NamingRule(
        1, 128, re.compile(r"^[a-z0-9][a-z0-9_-]*$"),
        "letters, digits, hyphens and underscores",
    ),
    APP_PLAN: NamingRule(1, 40, _HYPHENATED, "letters, digits and hyphens"),
    WEB_APP: NamingRule(
        2, 60, _HYPHENATED,
        "letters, digits and hyphens; cannot start or end with a hyphen",
    ),
    OPENAI_ACCOUNT: NamingRule(
        2, 64, _HYPHENATED,
        "letters, digits and hyphens; cannot start or end with a hyphen",
    ),
    OPENAI_DEPLOYMENT: NamingRule(
        2, 64, re.compile(r"^[a-z0-9][a-z0-9_.-]*$"),
        "letters, digits, dots, hyphens and underscores",
    ),
    SEARCH_SERVICE: NamingRule(
        2, 60, re.compile(r"^[a-z0-9](?!.*--)[a-z0-9-]*[a-z0-9]$"),
        "letters, digits and single hyphens; cannot start or end with a hyphen",
    ),
    ROLE_ASSIGNMENT: NamingRule(36, 36, GUID_PATTERN, "a lowercase GUID"),
}

BASE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]{1,18}[a-z0-9]$")


def resource_id(kind: str, name: str) -> str:
    """Backend expression for a resource id."""
    return f"[resourceId('{kind}', '{name}')]"


def reference(kind: str, name: str, prop: str) -> str:
    """Backend expression for a runtime property of a deployed resource."""
    return f"[reference(resourceId('{kind}', '{name}')).{prop}]"


def role_assignment_name(base_name: str, scope: str, role: str) -> str:
    """Deterministic GUID name so re-deployment does not duplicate assignments."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"provchestra/{base_name}/{scope}/{role}"))


@dataclass(frozen=True)
class NodeTemplate:
    """
    A catalog entry that renders into a ResourceNode for a given configuration.

    name/properties/outputs are callables taking (config, names), where names
    maps node ids to rendered platform names for cross-references.
    """
    node_id: str
    kind: str
    name: Callable[[DeploymentConfig], str]
    module: Optional[str] = None
    depends_on: tuple[str, ...] = ()
    optional_depends_on: tuple[str, ...] = ()
    parent: Optional[str] = None
    properties: Callable[[DeploymentConfig, dict[str, str]], dict[str, Any]] = field(
        default=lambda config, names: {}
    )
    outputs: Callable[[DeploymentConfig, dict[str, str]], dict[str, Any]] = field(
        default=lambda config, names: {}
    )


def _user_assigned(names: dict[str, str]) -> dict[str, Any]:
    return {
        "type": "UserAssigned",
        "userAssignedIdentities": {resource_id(IDENTITY, names["identity"]): {}},
    }


def _sql_server_properties(config: DeploymentConfig, names: dict[str, str]) -> dict[str, Any]:
    return {
        "identity": _user_assigned(names),
        "administrators": {
            "administratorType": "ActiveDirectory",
            "login": config.require("adminLogin"),
            "sid": config.require("adminObjectId"),
            "tenantId": "[subscription().tenantId]",
            "azureADOnlyAuthentication": True,
        },
        "primaryUserAssignedIdentityId": resource_id(IDENTITY, names["identity"]),
        "minimalTlsVersion": "1.2",
        "publicNetworkAccess": "Enabled",
    }


def _web_app_properties(config: DeploymentConfig, names: dict[str, str]) -> dict[str, Any]:
    return {
        "kind": "app,linux",
        "identity": _user_assigned(names),
        "serverFarmId": resource_id(APP_PLAN, names["app-plan"]),
        "httpsOnly": True,
        "keyVaultReferenceIdentity": resource_id(IDENTITY, names["identity"]),
        "siteConfig": {
            "linuxFxVersion": config.get("runtimeStack", "PYTHON|3.11"),
            "appSettings": [
                {"name": "AZURE_SQL_SERVER", "value": f"{names['sql-server']}.database.windows.net"},
                {"name": "AZURE_SQL_DATABASE", "value": names["sql-database"]},
            ],
        },
    }


def _role_properties(role: str, target_kind: str, target: str):
    def render(config: DeploymentConfig, names: dict[str, str]) -> dict[str, Any]:
        return {
            "roleDefinitionId": (
                f"[subscriptionResourceId('Microsoft.Authorization/roleDefinitions', '{role}')]"
            ),
            "principalId": reference(IDENTITY, names["identity"], "principalId"),
            "principalType": "ServicePrincipal",
            "scope": f"{target_kind}/{names[target]}",
        }
    return render


DEFAULT_CATALOG: tuple[NodeTemplate, ...] = (
    NodeTemplate(
        node_id="identity",
        kind=IDENTITY,
        name=lambda c: f"{c.base_name}-identity",
        outputs=lambda c, n: {
            "managedIdentityName": n["identity"],
            "managedIdentityClientId": reference(IDENTITY, n["identity"], "clientId"),
            "managedIdentityPrincipalId": reference(IDENTITY, n["identity"], "principalId"),
        },
    ),
    NodeTemplate(
        node_id="sql-server",
        kind=SQL_SERVER,
        name=lambda c: f"{c.base_name}-sql",
        depends_on=("identity",),
        properties=_sql_server_properties,
        outputs=lambda c, n: {
            "sqlServerName": n["sql-server"],
            "sqlServerFqdn": reference(SQL_SERVER, n["sql-server"], "fullyQualifiedDomainName"),
        },
    ),
    NodeTemplate(
        node_id="sql-database",
        kind=SQL_DATABASE,
        name=lambda c: f"{c.base_name.replace('-', '')}db",
        depends_on=("sql-server",),
        parent="sql-server",
        properties=lambda c, n: {
            "sku": {"name": c.get("sqlDatabaseSku", "Basic")},
            "collation": "SQL_Latin1_General_CP1_CI_AS",
        },
        outputs=lambda c, n: {"sqlDatabaseName": n["sql-database"]},
    ),
    NodeTemplate(
        node_id="app-plan",
        kind=APP_PLAN,
        name=lambda c: f"{c.base_name}-plan",
        properties=lambda c, n: {
            "sku": {"name": c.get("appServiceSku", "B1")},
            "kind": "linux",
            "reserved": True,
        },
    ),
    NodeTemplate(
        node_id="web-app",
        kind=WEB_APP,
        name=lambda c: f"{c.base_name}-app",
        depends_on=("app-plan", "identity"),
        optional_depends_on=("openai-deployment", "search"),
        properties=_web_app_properties,
        outputs=lambda c, n: {
            "webAppName": n["web-app"],
            "webAppUrl": f"https://{n['web-app']}.azurewebsites.net",
        },
    ),
    NodeTemplate(
        node_id="openai",
        kind=OPENAI_ACCOUNT,
        name=lambda c: f"{c.base_name}-openai",
        module="genai",
        properties=lambda c, n: {
            "sku": {"name": "S0"},
            "kind": "OpenAI",
            "customSubDomainName": n["openai"],
            "publicNetworkAccess": "Enabled",
        },
        outputs=lambda c, n: {
            "openAIName": n["openai"],
            "openAIEndpoint": reference(OPENAI_ACCOUNT, n["openai"], "endpoint"),
        },
    ),
    NodeTemplate(
        node_id="openai-deployment",
        kind=OPENAI_DEPLOYMENT,
        name=lambda c: str(c.post_deploy.openai_deployment_name),
        module="genai",
        depends_on=("openai",),
        parent="openai",
        properties=lambda c, n: {
            "sku": {"name": "Standard", "capacity": int(c.get("openAICapacity", 10))},
            "model": {
                "format": "OpenAI",
                "name": c.get("openAIModelName", "gpt-4o-mini"),
                "version": c.get("openAIModelVersion", "2024-07-18"),
            },
        },
        outputs=lambda c, n: {"openAIDeploymentName": n["openai-deployment"]},
    ),
    NodeTemplate(
        node_id="openai-role",
        kind=ROLE_ASSIGNMENT,
        name=lambda c: role_assignment_name(c.base_name, "openai", OPENAI_USER_ROLE),
        module="genai",
        depends_on=("openai", "identity"),
        properties=_role_properties(OPENAI_USER_ROLE, OPENAI_ACCOUNT, "openai"),
    ),
    NodeTemplate(
        node_id="search",
        kind=SEARCH_SERVICE,
        name=lambda c: f"{c.base_name}-search",
        module="search",
        properties=lambda c, n: {
            "sku": {"name": c.get("searchSku", "basic")},
            "replicaCount": 1,
            "partitionCount": 1,
        },
        outputs=lambda c, n: {
            "searchName": n["search"],
            "searchEndpoint": f"https://{n['search']}.search.windows.net",
        },
    ),
    NodeTemplate(
        node_id="search-role",
        kind=ROLE_ASSIGNMENT,
        name=lambda c: role_assignment_name(c.base_name, "search", SEARCH_INDEX_READER_ROLE),
        module="search",
        depends_on=("search", "identity"),
        properties=_role_properties(SEARCH_INDEX_READER_ROLE, SEARCH_SERVICE, "search"),
    ),
)


def validate_parameters(config: DeploymentConfig) -> None:
    """
    Validate the inputs the builder needs.

    Raises:
        ConfigurationError: If a required parameter is missing or malformed
    """
    for name in REQUIRED_PARAMETERS:
        config.require(name)

    base_name = str(config.require("baseName"))
    if base_name != base_name.lower():
        raise ConfigurationError(f"baseName '{base_name}' must be lowercase")
    if not BASE_NAME_PATTERN.match(base_name):
        raise ConfigurationError(
            f"baseName '{base_name}' must be 3-20 characters of lowercase letters, digits "
            f"and hyphens, starting with a letter and not ending with a hyphen"
        )

    if not GUID_PATTERN.match(str(config.require("adminObjectId"))):
        raise ConfigurationError(
            f"adminObjectId must be a GUID, got {config.get('adminObjectId')!r}"
        )

    for flag_name in MODULE_FLAGS.values():
        config.flag(flag_name)


def validate_name(kind: str, name: str) -> None:
    """Check a generated name against the naming rule for its kind, if one is known."""
    rule = NAMING_RULES.get(kind)
    if rule is not None:
        rule.check(kind, name)
    elif name != name.lower():
        raise ConfigurationError(f"{kind} name '{name}' must be lowercase")


def build_graph(
    config: DeploymentConfig,
    catalog: tuple[NodeTemplate, ...] = DEFAULT_CATALOG,
) -> ResourceGraph:
    """
    Build the ResourceGraph for a configuration.

    Args:
        config: Deployment configuration (parameters and feature flags)
        catalog: Node templates to render (defaults to DEFAULT_CATALOG)

    Returns:
        A validated ResourceGraph

    Raises:
        ConfigurationError: Missing parameters, naming violations, unknown modules,
            or a core resource with a hard dependency on an excluded module
        CyclicDependencyError: If the dependency edges contain a cycle
    """
    validate_parameters(config)

    modules = {t.module for t in catalog if t.module is not None}
    unknown = sorted(m for m in modules if m not in MODULE_FLAGS)
    if unknown:
        raise ConfigurationError(f"Catalog references unknown optional module(s): {unknown}")

    included_modules = {m for m in modules if config.module_enabled(m)}
    excluded_modules = modules - included_modules

    seen: set[str] = set()
    for template in catalog:
        if template.node_id in seen:
            raise ConfigurationError(f"Duplicate resource id in catalog: '{template.node_id}'")
        seen.add(template.node_id)

    # Render names for every template so cross-references resolve
    names: dict[str, str] = {}
    for template in catalog:
        names[template.node_id] = template.name(config)

    kept = [t for t in catalog if t.module is None or t.module in included_modules]
    kept_ids = {t.node_id for t in kept}

    nodes: dict[str, ResourceNode] = {}
    absent: dict[str, frozenset[str]] = {}
    for template in kept:
        excluded_hard = sorted(
            d for d in template.depends_on if d in seen and d not in kept_ids
        )
        if excluded_hard:
            raise ConfigurationError(
                f"Resource '{template.node_id}' requires {excluded_hard}, which belong to "
                f"excluded optional module(s); declare the edge as optional or exclude the resource"
            )

        dropped = frozenset(
            d for d in template.optional_depends_on if d in seen and d not in kept_ids
        )
        if dropped:
            absent[template.node_id] = dropped

        validate_name(template.kind, names[template.node_id])

        nodes[template.node_id] = ResourceNode(
            node_id=template.node_id,
            kind=template.kind,
            name=names[template.node_id],
            properties=template.properties(config, names),
            depends_on=frozenset(template.depends_on),
            optional_depends_on=frozenset(template.optional_depends_on) - dropped,
            module=template.module,
            parent=template.parent,
            outputs=template.outputs(config, names),
        )

    graph = ResourceGraph(
        nodes,
        included_modules=included_modules,
        excluded_modules=excluded_modules,
        absent_dependencies=absent,
    )
    graph.validate()
    return graph
