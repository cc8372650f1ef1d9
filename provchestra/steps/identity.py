"""
Database identity steps for the application's managed identity.

- create-identity-user: drop-and-recreate, because an external-provider
  user is bound to the identity's object id when it is created; a user left
  over from a deleted identity of the same name would never authenticate
- grant-identity-roles: add role membership only where it is missing
- grant-execute: GRANT is idempotent by itself
"""

import logging
from typing import Any

from provchestra.credentials import SQL_AUDIENCE
from provchestra.pipeline import DATABASE_OUTPUTS, ConfigurationStep, StepContext

logger = logging.getLogger(__name__)

IDENTITY_OUTPUTS = DATABASE_OUTPUTS + ("managedIdentityName",)


class CreateIdentityUserStep(ConfigurationStep):
    """Create the database user for the managed identity."""

    name = "create-identity-user"
    idempotency = "drop-and-recreate"
    requires = IDENTITY_OUTPUTS
    after = ("wait-for-database",)

    def apply(self, ctx: StepContext) -> dict[str, Any]:
        target = ctx.database_target()
        principal = ctx.resolver.get("managedIdentityName")
        token = ctx.credentials.acquire(SQL_AUDIENCE)

        if ctx.data_store.principal_exists(target, token, principal):
            logger.info(f"Recreating database user {principal}")
            ctx.data_store.drop_principal(target, token, principal)
        ctx.data_store.create_external_principal(target, token, principal)
        return {"principal": principal}


class GrantIdentityRolesStep(ConfigurationStep):
    """Add the identity to the configured database roles."""

    name = "grant-identity-roles"
    idempotency = "membership checked before ALTER ROLE"
    requires = IDENTITY_OUTPUTS
    after = ("create-identity-user",)

    def apply(self, ctx: StepContext) -> dict[str, Any]:
        target = ctx.database_target()
        principal = ctx.resolver.get("managedIdentityName")
        token = ctx.credentials.acquire(SQL_AUDIENCE)

        granted = []
        present = []
        for role in ctx.config.post_deploy.database_roles:
            if principal in ctx.data_store.role_members(target, token, role):
                present.append(role)
                continue
            ctx.data_store.add_role_member(target, token, role, principal)
            granted.append(role)

        if present:
            logger.info(f"{principal} already in {present}")
        return {"granted": granted, "already_member": present}


class GrantExecuteStep(ConfigurationStep):
    """Allow the identity to execute stored procedures."""

    name = "grant-execute"
    idempotency = "GRANT is idempotent"
    requires = IDENTITY_OUTPUTS
    after = ("create-identity-user",)

    def apply(self, ctx: StepContext) -> dict[str, Any]:
        target = ctx.database_target()
        principal = ctx.resolver.get("managedIdentityName")
        token = ctx.credentials.acquire(SQL_AUDIENCE)
        ctx.data_store.grant_execute(target, token, principal)
        return {"principal": principal}
