"""Schema and stored procedure deployment."""

import logging
from typing import Any

from provchestra.credentials import SQL_AUDIENCE
from provchestra.errors import ConfigurationError
from provchestra.pipeline import DATABASE_OUTPUTS, ConfigurationStep, StepContext
from provchestra.sql import split_batches

logger = logging.getLogger(__name__)


class ImportSchemaStep(ConfigurationStep):
    """
    Run the schema script batch by batch.

    The script must be written idempotently (IF NOT EXISTS / OBJECT_ID
    guards); the step does not rewrite it.
    """

    name = "import-schema"
    idempotency = "guarded DDL in the schema script"
    requires = DATABASE_OUTPUTS
    after = ("wait-for-database",)

    def apply(self, ctx: StepContext) -> dict[str, Any]:
        schema_file = ctx.config.post_deploy.schema_file
        if schema_file is None:
            logger.info("No schema file configured")
            return {"batches": 0}
        if not schema_file.exists():
            raise ConfigurationError(f"Schema file not found: {schema_file}")

        batches = split_batches(schema_file.read_text(encoding="utf-8"))
        target = ctx.database_target()
        token = ctx.credentials.acquire(SQL_AUDIENCE)
        executed = ctx.data_store.apply_schema(target, token, batches)
        logger.info(f"Applied {executed} schema batch(es) from {schema_file.name}")
        return {"batches": executed, "file": schema_file.name}


class CreateStoredProceduresStep(ConfigurationStep):
    """Deploy every *.sql file in the procedures directory as CREATE OR ALTER."""

    name = "create-stored-procedures"
    idempotency = "CREATE OR ALTER PROCEDURE"
    requires = DATABASE_OUTPUTS
    after = ("import-schema",)

    def apply(self, ctx: StepContext) -> dict[str, Any]:
        procedures_dir = ctx.config.post_deploy.procedures_dir
        if procedures_dir is None:
            logger.info("No procedures directory configured")
            return {"procedures": []}
        if not procedures_dir.is_dir():
            raise ConfigurationError(f"Procedures directory not found: {procedures_dir}")

        target = ctx.database_target()
        token = ctx.credentials.acquire(SQL_AUDIENCE)
        deployed = []
        for path in sorted(procedures_dir.glob("*.sql")):
            try:
                ctx.data_store.create_or_alter_procedure(
                    target, token, path.stem, path.read_text(encoding="utf-8")
                )
            except ValueError as e:
                raise ConfigurationError(f"{path.name}: {e}") from e
            deployed.append(path.stem)

        logger.info(f"Deployed {len(deployed)} stored procedure(s)")
        return {"procedures": deployed}
