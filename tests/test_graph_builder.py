"""Tests for the resource graph builder."""

import pytest

from provchestra.errors import ConfigurationError, CyclicDependencyError
from provchestra.graph_builder import (
    DEFAULT_CATALOG,
    OPENAI_USER_ROLE,
    ROLE_ASSIGNMENT,
    SQL_SERVER,
    NodeTemplate,
    build_graph,
    role_assignment_name,
    validate_name,
)


GENAI_NODES = {"openai", "openai-deployment", "openai-role"}
SEARCH_NODES = {"search", "search-role"}
CORE_NODES = {"identity", "sql-server", "sql-database", "app-plan", "web-app"}


class TestBuildGraph:
    """Tests for build_graph() module inclusion."""

    def test_core_only(self, make_config):
        graph = build_graph(make_config(deployGenAI=False, deploySearch=False))
        assert set(graph) == CORE_NODES
        assert graph.included_modules == frozenset()
        assert graph.excluded_modules == frozenset({"genai", "search"})

    def test_genai_included(self, make_config):
        graph = build_graph(make_config(deployGenAI=True, deploySearch=False))
        assert set(graph) == CORE_NODES | GENAI_NODES
        assert "genai" in graph.included_modules

    def test_all_modules(self, make_config):
        graph = build_graph(make_config(deployGenAI=True, deploySearch=True))
        assert set(graph) == CORE_NODES | GENAI_NODES | SEARCH_NODES
        assert graph.absent_dependencies == {}

    def test_excluded_module_leaves_no_nodes_or_edges(self, make_config):
        graph = build_graph(make_config(deployGenAI=False, deploySearch=True))
        assert not GENAI_NODES & set(graph)
        for node_id in graph:
            assert not GENAI_NODES & graph.edges(node_id)
        assert graph.absent_dependencies["web-app"] == frozenset({"openai-deployment"})

    def test_web_app_edges_when_modules_on(self, make_config):
        graph = build_graph(make_config(deployGenAI=True, deploySearch=True))
        assert graph.edges("web-app") == frozenset(
            {"app-plan", "identity", "openai-deployment", "search"}
        )

    def test_string_flags(self, make_config):
        graph = build_graph(make_config(deployGenAI="false", deploySearch="yes"))
        assert graph.included_modules == frozenset({"search"})

    def test_order_puts_role_after_account(self, make_config):
        order = build_graph(make_config(deployGenAI=True)).topological_order()
        assert order.index("openai") < order.index("openai-role")
        assert order.index("identity") < order.index("sql-server")
        assert order.index("sql-server") < order.index("sql-database")

    def test_pure_function(self, make_config):
        config = make_config()
        assert build_graph(config).to_dict() == build_graph(config).to_dict()


class TestRenderedNodes:
    """Tests for rendered node names, properties and outputs."""

    def test_names(self, make_config):
        graph = build_graph(make_config(baseName="my-app"))
        assert graph["sql-server"].name == "my-app-sql"
        assert graph["sql-database"].name == "myappdb"
        assert graph["web-app"].name == "my-app-app"
        assert graph["sql-database"].parent == "sql-server"

    def test_sql_admin(self, config):
        admin = build_graph(config)["sql-server"].properties["administrators"]
        assert admin["sid"] == config.get("adminObjectId")
        assert admin["azureADOnlyAuthentication"] is True

    def test_outputs(self, config):
        graph = build_graph(config)
        assert graph["web-app"].outputs["webAppUrl"] == "https://demo-app.azurewebsites.net"
        assert graph["sql-server"].outputs["sqlServerName"] == "demo-sql"
        assert "fullyQualifiedDomainName" in graph["sql-server"].outputs["sqlServerFqdn"]

    def test_openai_deployment_name_from_settings(self, make_config_dict):
        from provchestra.config import DeploymentConfig

        data = make_config_dict()
        data["post_deploy"]["openai_deployment_name"] = "gpt-chat"
        graph = build_graph(DeploymentConfig.from_dict(data))
        assert graph["openai-deployment"].name == "gpt-chat"

    def test_role_assignment_names_are_stable(self):
        first = role_assignment_name("demo", "openai", OPENAI_USER_ROLE)
        assert first == role_assignment_name("demo", "openai", OPENAI_USER_ROLE)
        assert first != role_assignment_name("other", "openai", OPENAI_USER_ROLE)
        validate_name(ROLE_ASSIGNMENT, first)


class TestValidation:
    """Tests for validation performed before submission."""

    @pytest.mark.parametrize("base_name", ["Demo", "ab", "1demo", "demo-", "x" * 21, "demo_app"])
    def test_bad_base_name(self, make_config, base_name):
        with pytest.raises(ConfigurationError, match="baseName"):
            build_graph(make_config(baseName=base_name))

    def test_missing_required(self, make_config_dict):
        from provchestra.config import DeploymentConfig

        data = make_config_dict()
        del data["parameters"]["adminLogin"]
        with pytest.raises(ConfigurationError, match="adminLogin"):
            build_graph(DeploymentConfig.from_dict(data))

    def test_bad_admin_object_id(self, make_config):
        with pytest.raises(ConfigurationError, match="adminObjectId"):
            build_graph(make_config(adminObjectId="bob"))

    def test_bad_flag(self, make_config):
        with pytest.raises(ConfigurationError, match="deployGenAI"):
            build_graph(make_config(deployGenAI="sometimes"))

    def test_name_rules(self):
        with pytest.raises(ConfigurationError, match="lowercase"):
            validate_name(SQL_SERVER, "Demo-sql")
        with pytest.raises(ConfigurationError, match="hyphen"):
            validate_name(SQL_SERVER, "demo-sql-")
        with pytest.raises(ConfigurationError, match="characters"):
            validate_name(SQL_SERVER, "a" * 64)
        validate_name(SQL_SERVER, "demo-sql")

    def test_unknown_kind_must_be_lowercase(self):
        validate_name("Contoso/widgets", "widget")
        with pytest.raises(ConfigurationError):
            validate_name("Contoso/widgets", "Widget")

    def test_hard_dependency_on_excluded_module(self, make_config):
        catalog = DEFAULT_CATALOG + (
            NodeTemplate(
                node_id="needs-search",
                kind="Contoso/widgets",
                name=lambda c: "widget",
                depends_on=("search",),
            ),
        )
        with pytest.raises(ConfigurationError, match="needs-search"):
            build_graph(make_config(deploySearch=False), catalog)

    def test_unknown_module(self, config):
        catalog = (NodeTemplate(node_id="x", kind="Contoso/widgets", name=lambda c: "x", module="quantum"),)
        with pytest.raises(ConfigurationError, match="quantum"):
            build_graph(config, catalog)

    def test_duplicate_ids(self, config):
        catalog = DEFAULT_CATALOG + (DEFAULT_CATALOG[0],)
        with pytest.raises(ConfigurationError, match="Duplicate"):
            build_graph(config, catalog)

    def test_cycle_rejected(self, config):
        catalog = (
            NodeTemplate(node_id="a", kind="Contoso/widgets", name=lambda c: "aaa", depends_on=("b",)),
            NodeTemplate(node_id="b", kind="Contoso/widgets", name=lambda c: "bbb", depends_on=("a",)),
        )
        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(config, catalog)
        assert set(exc_info.value.cycle) == {"a", "b"}
