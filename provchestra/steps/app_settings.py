"""Application settings for the web app."""

import logging
from typing import Any

from provchestra.pipeline import ConfigurationStep, StepContext

logger = logging.getLogger(__name__)


class ApplyAppSettingsStep(ConfigurationStep):
    """
    Point the web app at the AI endpoints.

    Runs only when the GenAI module was deployed. The search endpoint is
    added when the search module was deployed as well.
    """

    name = "apply-app-settings"
    idempotency = "settings are merged by key"
    requires = ("webAppName",)
    optional_inputs = ("openAIEndpoint", "openAIDeploymentName")
    after = ("grant-identity-roles",)

    def settings(self, ctx: StepContext) -> dict[str, str]:
        resolver = ctx.resolver
        settings = {
            "AZURE_OPENAI_ENDPOINT": str(resolver.get("openAIEndpoint")),
            "AZURE_OPENAI_DEPLOYMENT": str(resolver.get("openAIDeploymentName")),
        }

        client_id = resolver.get_optional("managedIdentityClientId")
        if client_id:
            settings["AZURE_CLIENT_ID"] = str(client_id.value)

        search = resolver.get_optional("searchEndpoint")
        if search:
            settings["AZURE_SEARCH_ENDPOINT"] = str(search.value)

        settings.update({k: str(v) for k, v in ctx.config.post_deploy.extra_app_settings.items()})
        return settings

    def apply(self, ctx: StepContext) -> dict[str, Any]:
        app_name = ctx.resolver.get("webAppName")
        settings = self.settings(ctx)
        ctx.app_config.apply_settings(app_name, settings)
        return {"app": app_name, "settings": sorted(settings)}
