"""
Application configuration clients.

The last Phase 2 step pushes endpoint values into the web app's settings.
Applying the same settings twice leaves the app unchanged.
"""

import logging
from typing import Protocol, runtime_checkable

from provchestra.azure_cli import AzureCli

logger = logging.getLogger(__name__)


@runtime_checkable
class AppConfigClient(Protocol):
    """Protocol for reading and merging application settings."""

    def apply_settings(self, app_name: str, settings: dict[str, str]) -> None:
        """Merge settings into the app's configuration (existing keys are overwritten)."""
        ...

    def get_settings(self, app_name: str) -> dict[str, str]:
        ...


class InMemoryAppConfig:
    """In-memory AppConfigClient for tests and dry runs."""

    def __init__(self):
        self.apps: dict[str, dict[str, str]] = {}
        self.apply_count = 0

    def apply_settings(self, app_name: str, settings: dict[str, str]) -> None:
        self.apply_count += 1
        self.apps.setdefault(app_name, {}).update(settings)

    def get_settings(self, app_name: str) -> dict[str, str]:
        return dict(self.apps.get(app_name, {}))


class AzureCliAppConfig:
    """AppConfigClient backed by `az webapp config appsettings`."""

    def __init__(self, cli: AzureCli, resource_group: str):
        self.cli = cli
        self.resource_group = resource_group

    def apply_settings(self, app_name: str, settings: dict[str, str]) -> None:
        if not settings:
            return
        logger.info(f"Setting {len(settings)} app setting(s) on {app_name}: {sorted(settings)}")
        self.cli.run([
            "webapp", "config", "appsettings", "set",
            "--resource-group", self.resource_group,
            "--name", app_name,
            "--settings", *[f"{key}={value}" for key, value in sorted(settings.items())],
        ])

    def get_settings(self, app_name: str) -> dict[str, str]:
        entries = self.cli.run([
            "webapp", "config", "appsettings", "list",
            "--resource-group", self.resource_group,
            "--name", app_name,
        ]) or []
        return {entry["name"]: entry.get("value", "") for entry in entries}
