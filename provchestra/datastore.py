"""
Data store administration - the seam Phase 2 uses to configure the database.

DataStoreAdmin covers both planes:
- Management plane (server state, firewall rules) via the az CLI
- Data plane (principals, roles, grants, schema, procedures) via T-SQL over
  a DB-API connection authenticated with an access token

Implementations:
- SqlDataStoreAdmin: real server; the DB-API connection factory is supplied
  by the caller (or loaded from configuration as "module:function")
- InMemoryDataStore: emulates the server, including duplicate-object errors,
  so idempotency can be tested without one
"""

import importlib
import logging
import re
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from provchestra import sql
from provchestra.azure_cli import AzureCli
from provchestra.credentials import SQL_AUDIENCE, CredentialToken
from provchestra.errors import AuthenticationError, ConfigurationError, PermanentError, TransientError

logger = logging.getLogger(__name__)

READY_STATE = "Ready"


class DuplicateObjectError(PermanentError):
    """The data store already contains the object being created."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"There is already an object named '{name}' ({kind}) in the database")


@dataclass(frozen=True)
class DatabaseTarget:
    """Where the database lives."""
    server_name: str
    server_fqdn: str
    database: str
    resource_group: Optional[str] = None


@dataclass(frozen=True)
class FirewallRule:
    """An IPv4 range allowed through the server firewall."""
    name: str
    start_ip: str
    end_ip: str

    @classmethod
    def single(cls, name: str, ip: str) -> "FirewallRule":
        return cls(name, ip, ip)

    @classmethod
    def azure_services(cls) -> "FirewallRule":
        # 0.0.0.0 - 0.0.0.0 is the platform convention for "allow Azure services"
        return cls("AllowAllWindowsAzureIps", "0.0.0.0", "0.0.0.0")


@runtime_checkable
class DataStoreAdmin(Protocol):
    """
    Protocol for database administration used by the configuration steps.

    Data-plane methods take the access token explicitly so that credential
    acquisition (and its failures) stays visible in the calling step.
    """

    def server_state(self, target: DatabaseTarget) -> str:
        """Management-plane state of the server, e.g. "Ready"."""
        ...

    def ping(self, target: DatabaseTarget, token: CredentialToken) -> bool:
        """True if the database accepts a connection and a trivial query."""
        ...

    def upsert_firewall_rule(self, target: DatabaseTarget, rule: FirewallRule) -> None:
        ...

    def principal_exists(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> bool:
        ...

    def drop_principal(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> None:
        ...

    def create_external_principal(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> None:
        ...

    def role_members(self, target: DatabaseTarget, token: CredentialToken, role: str) -> set[str]:
        ...

    def add_role_member(self, target: DatabaseTarget, token: CredentialToken, role: str, principal: str) -> None:
        ...

    def grant_execute(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> None:
        ...

    def apply_schema(self, target: DatabaseTarget, token: CredentialToken, batches: list[str]) -> int:
        """Run schema batches in order; returns the number executed."""
        ...

    def create_or_alter_procedure(
        self, target: DatabaseTarget, token: CredentialToken, name: str, definition: str
    ) -> None:
        ...


ConnectionFactory = Callable[[DatabaseTarget, CredentialToken], Any]


def load_connection_factory(path: str) -> ConnectionFactory:
    """
    Import a DB-API connection factory given as "package.module:function".

    Raises:
        ConfigurationError: If the module or attribute cannot be loaded
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            f"Connection factory must look like 'package.module:function', got '{path}'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import connection factory module '{module_name}': {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"'{path}' is not a callable connection factory")
    return factory


_TRANSIENT_SQL = re.compile(
    r"(\b40613\b|\b40197\b|\b40501\b|\b49918\b|\b4060\b|timeout|timed out|"
    r"Communication link failure|TCP Provider|not currently available)",
    re.IGNORECASE,
)
_AUTH_SQL = re.compile(r"(\b18456\b|Login failed|token is expired|AADSTS\d+)", re.IGNORECASE)


def classify_sql_error(error: Exception) -> Exception:
    """
    Map a driver exception to the provchestra error taxonomy.

    Unknown errors are permanent (fail fast).
    """
    message = str(error)
    if _AUTH_SQL.search(message):
        return AuthenticationError(f"Database login was denied: {message}", audience=SQL_AUDIENCE)
    if isinstance(error, (TimeoutError, ConnectionError)) or _TRANSIENT_SQL.search(message):
        return TransientError(f"Database temporarily unavailable: {message}")
    if "already an object named" in message or "already exists" in message:
        return DuplicateObjectError("object", message)
    return PermanentError(message)


class SqlDataStoreAdmin:
    """
    DataStoreAdmin for a real server.

    Args:
        connect: DB-API connection factory (target, token) -> connection
        cli: AzureCli for management-plane calls
    """

    def __init__(self, connect: ConnectionFactory, cli: AzureCli):
        self._connect = connect
        self.cli = cli

    def _execute(
        self,
        target: DatabaseTarget,
        token: CredentialToken,
        statements: list[tuple[str, tuple]],
        fetch: bool = False,
    ) -> list[tuple]:
        rows: list[tuple] = []
        try:
            with closing(self._connect(target, token)) as conn:
                with closing(conn.cursor()) as cursor:
                    for statement, params in statements:
                        if params:
                            cursor.execute(statement, params)
                        else:
                            cursor.execute(statement)
                        if fetch:
                            rows.extend(cursor.fetchall())
                conn.commit()
        except (TransientError, PermanentError):
            raise
        except Exception as e:
            raise classify_sql_error(e) from e
        return rows

    def server_state(self, target: DatabaseTarget) -> str:
        payload = self.cli.run([
            "sql", "server", "show",
            "--resource-group", _require_group(target),
            "--name", target.server_name,
        ]) or {}
        return str(payload.get("state", "Unknown"))

    def ping(self, target: DatabaseTarget, token: CredentialToken) -> bool:
        try:
            self._execute(target, token, [(sql.PING, ())], fetch=True)
        except TransientError as e:
            logger.debug(f"Ping {target.database} failed: {e}")
            return False
        return True

    def upsert_firewall_rule(self, target: DatabaseTarget, rule: FirewallRule) -> None:
        # PUT semantics: creating an existing rule name updates it in place
        self.cli.run([
            "sql", "server", "firewall-rule", "create",
            "--resource-group", _require_group(target),
            "--server", target.server_name,
            "--name", rule.name,
            "--start-ip-address", rule.start_ip,
            "--end-ip-address", rule.end_ip,
        ])

    def principal_exists(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> bool:
        return bool(self._execute(target, token, [(sql.PRINCIPAL_EXISTS, (principal,))], fetch=True))

    def drop_principal(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> None:
        self._execute(target, token, [(sql.drop_user(principal), ())])

    def create_external_principal(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> None:
        self._execute(target, token, [(sql.create_external_user(principal), ())])

    def role_members(self, target: DatabaseTarget, token: CredentialToken, role: str) -> set[str]:
        rows = self._execute(target, token, [(sql.ROLE_MEMBERS, (role,))], fetch=True)
        return {row[0] for row in rows}

    def add_role_member(self, target: DatabaseTarget, token: CredentialToken, role: str, principal: str) -> None:
        self._execute(target, token, [(sql.add_role_member(role, principal), ())])

    def grant_execute(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> None:
        self._execute(target, token, [(sql.grant_execute(principal), ())])

    def apply_schema(self, target: DatabaseTarget, token: CredentialToken, batches: list[str]) -> int:
        self._execute(target, token, [(batch, ()) for batch in batches])
        return len(batches)

    def create_or_alter_procedure(
        self, target: DatabaseTarget, token: CredentialToken, name: str, definition: str
    ) -> None:
        self._execute(target, token, [(sql.as_create_or_alter(definition), ())])


def _require_group(target: DatabaseTarget) -> str:
    if not target.resource_group:
        raise ConfigurationError("deployment.resource_group is required for server management calls")
    return target.resource_group


_CREATE_TABLE = re.compile(r"\bCREATE\s+TABLE\s+([\w.\[\]]+)", re.IGNORECASE)
_GUARDED = re.compile(r"\bIF\s+(?:NOT\s+EXISTS|OBJECT_ID\s*\()", re.IGNORECASE)


class InMemoryDataStore:
    """
    In-memory DataStoreAdmin for tests and dry runs.

    Behaves like a server that rejects duplicates: creating an existing
    principal, adding an existing role member, or running an unguarded
    CREATE TABLE for an existing table raises DuplicateObjectError.

    Args:
        not_ready_pings: Number of pings that answer "not ready" first
        server_states: States returned by successive server_state() calls;
            the last one repeats
    """

    def __init__(self, not_ready_pings: int = 0, server_states: Optional[list[str]] = None):
        self.not_ready_pings = not_ready_pings
        self.server_states = list(server_states or [READY_STATE])
        self.firewall_rules: dict[str, FirewallRule] = {}
        self.principals: set[str] = set()
        self.roles: dict[str, set[str]] = {}
        self.execute_grants: set[str] = set()
        self.tables: set[str] = set()
        self.schema_batches: list[str] = []
        self.procedures: dict[str, str] = {}
        self.calls: list[str] = []
        self.failures: dict[str, list[BaseException]] = {}

    def fail_next(self, operation: str, *errors: BaseException) -> None:
        """Queue errors raised by the next calls to an operation."""
        self.failures.setdefault(operation, []).extend(errors)

    def _enter(self, operation: str, token: Optional[CredentialToken] = None) -> None:
        self.calls.append(operation)
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)
        if token is not None and token.audience != SQL_AUDIENCE:
            raise AuthenticationError(
                f"Token audience {token.audience} is not valid for the database",
                audience=token.audience,
            )

    def snapshot(self) -> dict[str, Any]:
        """Comparable view of the configured state."""
        return {
            "firewall_rules": sorted(self.firewall_rules.values(), key=lambda r: r.name),
            "principals": sorted(self.principals),
            "roles": {role: sorted(members) for role, members in sorted(self.roles.items())},
            "execute_grants": sorted(self.execute_grants),
            "tables": sorted(self.tables),
            "procedures": dict(sorted(self.procedures.items())),
        }

    def server_state(self, target: DatabaseTarget) -> str:
        self._enter("server_state")
        if len(self.server_states) > 1:
            return self.server_states.pop(0)
        return self.server_states[0]

    def ping(self, target: DatabaseTarget, token: CredentialToken) -> bool:
        self._enter("ping", token)
        if self.not_ready_pings > 0:
            self.not_ready_pings -= 1
            return False
        return True

    def upsert_firewall_rule(self, target: DatabaseTarget, rule: FirewallRule) -> None:
        self._enter("upsert_firewall_rule")
        self.firewall_rules[rule.name] = rule

    def principal_exists(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> bool:
        self._enter("principal_exists", token)
        return principal in self.principals

    def drop_principal(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> None:
        self._enter("drop_principal", token)
        self.principals.discard(principal)
        for members in self.roles.values():
            members.discard(principal)
        self.execute_grants.discard(principal)

    def create_external_principal(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> None:
        self._enter("create_external_principal", token)
        if principal in self.principals:
            raise DuplicateObjectError("user", principal)
        self.principals.add(principal)

    def role_members(self, target: DatabaseTarget, token: CredentialToken, role: str) -> set[str]:
        self._enter("role_members", token)
        return set(self.roles.get(role, set()))

    def add_role_member(self, target: DatabaseTarget, token: CredentialToken, role: str, principal: str) -> None:
        self._enter("add_role_member", token)
        if principal not in self.principals:
            raise PermanentError(f"Cannot add '{principal}' to {role}: user does not exist")
        members = self.roles.setdefault(role, set())
        if principal in members:
            raise DuplicateObjectError("role member", f"{role}/{principal}")
        members.add(principal)

    def grant_execute(self, target: DatabaseTarget, token: CredentialToken, principal: str) -> None:
        self._enter("grant_execute", token)
        if principal not in self.principals:
            raise PermanentError(f"Cannot grant EXECUTE to '{principal}': user does not exist")
        # GRANT is naturally idempotent
        self.execute_grants.add(principal)

    def apply_schema(self, target: DatabaseTarget, token: CredentialToken, batches: list[str]) -> int:
        self._enter("apply_schema", token)
        for batch in batches:
            match = _CREATE_TABLE.search(batch)
            if match:
                table = match.group(1).replace("[", "").replace("]", "").lower()
                if table in self.tables and not _GUARDED.search(batch):
                    raise DuplicateObjectError("table", table)
                self.tables.add(table)
            self.schema_batches.append(batch)
        return len(batches)

    def create_or_alter_procedure(
        self, target: DatabaseTarget, token: CredentialToken, name: str, definition: str
    ) -> None:
        self._enter("create_or_alter_procedure", token)
        self.procedures[name] = sql.as_create_or_alter(definition)
