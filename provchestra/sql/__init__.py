"""T-SQL used by the post-deployment steps."""

from .statements import (
    PING,
    PRINCIPAL_EXISTS,
    ROLE_MEMBERS,
    add_role_member,
    as_create_or_alter,
    create_external_user,
    drop_user,
    grant_execute,
    quote_identifier,
    split_batches,
)

__all__ = [
    "PING",
    "PRINCIPAL_EXISTS",
    "ROLE_MEMBERS",
    "add_role_member",
    "as_create_or_alter",
    "create_external_user",
    "drop_user",
    "grant_execute",
    "quote_identifier",
    "split_batches",
]
