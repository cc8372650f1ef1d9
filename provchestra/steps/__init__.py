"""
provchestra.steps - The default post-deployment configuration steps.

default_steps() returns them in execution order.
"""

from provchestra.pipeline import ConfigurationStep

from .app_settings import ApplyAppSettingsStep
from .database_ready import WaitForDatabaseStep
from .firewall import GrantFirewallAccessStep
from .identity import CreateIdentityUserStep, GrantExecuteStep, GrantIdentityRolesStep
from .schema import CreateStoredProceduresStep, ImportSchemaStep


def default_steps() -> list[ConfigurationStep]:
    """The standard Phase 2 sequence."""
    return [
        GrantFirewallAccessStep(),
        WaitForDatabaseStep(),
        CreateIdentityUserStep(),
        GrantIdentityRolesStep(),
        GrantExecuteStep(),
        ImportSchemaStep(),
        CreateStoredProceduresStep(),
        ApplyAppSettingsStep(),
    ]


__all__ = [
    "ApplyAppSettingsStep",
    "CreateIdentityUserStep",
    "CreateStoredProceduresStep",
    "GrantExecuteStep",
    "GrantFirewallAccessStep",
    "GrantIdentityRolesStep",
    "ImportSchemaStep",
    "WaitForDatabaseStep",
    "default_steps",
]
