"""Server firewall access for the platform and the deployer."""

import ipaddress
import logging
from typing import Any

from provchestra.datastore import FirewallRule
from provchestra.errors import ConfigurationError
from provchestra.pipeline import DATABASE_OUTPUTS, ConfigurationStep, StepContext

logger = logging.getLogger(__name__)

DEPLOYER_RULE_NAME = "provchestra-deployer"


class GrantFirewallAccessStep(ConfigurationStep):
    """Open the server firewall so later steps (and the app) can connect."""

    name = "grant-firewall-access"
    idempotency = "rules are upserted by name"
    requires = DATABASE_OUTPUTS

    def rules(self, ctx: StepContext) -> list[FirewallRule]:
        rules = []
        if ctx.config.post_deploy.allow_azure_services:
            rules.append(FirewallRule.azure_services())

        client_ip = ctx.config.client_ip_address
        if client_ip:
            try:
                address = ipaddress.IPv4Address(str(client_ip))
            except ValueError as e:
                raise ConfigurationError(f"clientIpAddress is not an IPv4 address: {client_ip!r}") from e
            rules.append(FirewallRule.single(DEPLOYER_RULE_NAME, str(address)))
        return rules

    def apply(self, ctx: StepContext) -> dict[str, Any]:
        target = ctx.database_target()
        rules = self.rules(ctx)
        if not rules:
            logger.warning(f"No firewall rules configured for {target.server_name}")
        for rule in rules:
            logger.info(f"Firewall rule {rule.name}: {rule.start_ip}-{rule.end_ip} on {target.server_name}")
            ctx.data_store.upsert_firewall_rule(target, rule)
        return {"rules": [rule.name for rule in rules]}
