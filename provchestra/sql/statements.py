"""
T-SQL statement builders for the data-plane configuration steps.

Identifiers cannot be bound as query parameters, so they are bracket-quoted
with quote_identifier(). Values that can be bound (principal names in
catalog lookups) are passed as DB-API parameters ("?" placeholders).
"""

import re

_GO_LINE = re.compile(r"^\s*GO\s*(?:--.*)?$", re.IGNORECASE | re.MULTILINE)
_PROCEDURE_HEADER = re.compile(r"^\s*CREATE\s+(?:OR\s+ALTER\s+)?PROC(?:EDURE)?\b", re.IGNORECASE)

PRINCIPAL_EXISTS = "SELECT 1 FROM sys.database_principals WHERE name = ?"

ROLE_MEMBERS = (
    "SELECT m.name FROM sys.database_role_members rm "
    "JOIN sys.database_principals r ON rm.role_principal_id = r.principal_id "
    "JOIN sys.database_principals m ON rm.member_principal_id = m.principal_id "
    "WHERE r.name = ?"
)

PING = "SELECT 1"


def quote_identifier(name: str) -> str:
    """Bracket-quote a T-SQL identifier, escaping closing brackets."""
    if not name:
        raise ValueError("identifier must not be empty")
    return "[" + name.replace("]", "]]") + "]"


def drop_user(principal: str) -> str:
    return f"DROP USER IF EXISTS {quote_identifier(principal)}"


def create_external_user(principal: str) -> str:
    return f"CREATE USER {quote_identifier(principal)} FROM EXTERNAL PROVIDER"


def add_role_member(role: str, principal: str) -> str:
    return f"ALTER ROLE {quote_identifier(role)} ADD MEMBER {quote_identifier(principal)}"


def grant_execute(principal: str, schema: str = "dbo") -> str:
    return f"GRANT EXECUTE ON SCHEMA::{quote_identifier(schema)} TO {quote_identifier(principal)}"


def split_batches(script: str) -> list[str]:
    """
    Split a script on GO separator lines.

    GO is a client-side batch separator, not T-SQL, so each batch is sent
    separately. Empty batches are dropped.
    """
    return [batch.strip() for batch in _GO_LINE.split(script) if batch.strip()]


def as_create_or_alter(procedure_sql: str) -> str:
    """
    Rewrite a CREATE PROCEDURE header to CREATE OR ALTER PROCEDURE.

    Raises:
        ValueError: If the text does not start with a procedure definition
    """
    body = procedure_sql.strip()
    match = _PROCEDURE_HEADER.match(body)
    if not match:
        raise ValueError("procedure text must start with CREATE [OR ALTER] PROCEDURE")
    return "CREATE OR ALTER PROCEDURE" + body[match.end():]
