"""Tests for T-SQL statement builders."""

import pytest

from provchestra import sql


class TestQuoting:
    """Tests for identifier quoting."""

    def test_brackets(self):
        assert sql.quote_identifier("demo-identity") == "[demo-identity]"

    def test_escapes_closing_bracket(self):
        assert sql.quote_identifier("evil]; DROP TABLE x; --") == "[evil]]; DROP TABLE x; --]"

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            sql.quote_identifier("")

    def test_builders(self):
        assert sql.drop_user("app") == "DROP USER IF EXISTS [app]"
        assert sql.create_external_user("app") == "CREATE USER [app] FROM EXTERNAL PROVIDER"
        assert sql.add_role_member("db_datareader", "app") == "ALTER ROLE [db_datareader] ADD MEMBER [app]"
        assert sql.grant_execute("app") == "GRANT EXECUTE ON SCHEMA::[dbo] TO [app]"


class TestSplitBatches:
    """Tests for GO batch splitting."""

    def test_split(self):
        script = "CREATE TABLE a (x INT);\nGO\nCREATE TABLE b (y INT);\ngo -- trailing\n\nGO\n"
        assert sql.split_batches(script) == ["CREATE TABLE a (x INT);", "CREATE TABLE b (y INT);"]

    def test_go_inside_identifier_not_split(self):
        script = "SELECT GOAL FROM t;\nSELECT 1 AS go_value;"
        assert len(sql.split_batches(script)) == 1

    def test_empty(self):
        assert sql.split_batches("\nGO\n  \n") == []


class TestCreateOrAlter:
    """Tests for procedure header rewriting."""

    @pytest.mark.parametrize("header", [
        "CREATE PROCEDURE dbo.P",
        "create proc dbo.P",
        "CREATE OR ALTER PROCEDURE dbo.P",
        "  CREATE   PROCEDURE dbo.P",
    ])
    def test_rewrite(self, header):
        rewritten = sql.as_create_or_alter(f"{header}\nAS SELECT 1;")
        assert rewritten.startswith("CREATE OR ALTER PROCEDURE dbo.P")
        assert rewritten.endswith("AS SELECT 1;")

    def test_not_a_procedure(self):
        with pytest.raises(ValueError):
            sql.as_create_or_alter("CREATE VIEW v AS SELECT 1")
