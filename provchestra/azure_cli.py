"""
Azure CLI boundary.

Every management-plane call provchestra makes goes through AzureCli.run(),
so error classification happens in exactly one place:
- Throttling, timeouts and 5xx responses -> TransientError (safe to retry)
- AADSTS errors, AuthorizationFailed, not logged in -> AuthenticationError
- Anything else -> AzureCliError (fail fast)
"""

import json
import logging
import re
import shutil
import subprocess
from typing import Any, Optional, Sequence

from provchestra.errors import AuthenticationError, AzureCliError, ConfigurationError, TransientError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 1800.0

_TRANSIENT_PATTERNS = re.compile(
    r"(TooManyRequests|throttl|\b429\b|\b50[234]\b|ServiceUnavailable|GatewayTimeout|"
    r"InternalServerError|timed out|timeout|Connection reset|Connection aborted|"
    r"RetryableError|AnotherOperationInProgress)",
    re.IGNORECASE,
)
_AUTH_PATTERNS = re.compile(
    r"(AADSTS\d+|AuthorizationFailed|AuthenticationFailed|InvalidAuthenticationToken|"
    r"Please run 'az login'|az login|Forbidden|\b403\b)",
    re.IGNORECASE,
)


def classify_failure(command: Sequence[str], returncode: int, stderr: str) -> Exception:
    """
    Map a failed az invocation to the provchestra error taxonomy.

    Authentication patterns win over transient ones: a denied token
    stays denied no matter how often it is retried.
    """
    if _AUTH_PATTERNS.search(stderr):
        return AuthenticationError(f"az {' '.join(command[:3])} was denied: {stderr.strip()}")
    if _TRANSIENT_PATTERNS.search(stderr):
        return TransientError(f"az {' '.join(command[:3])} failed transiently: {stderr.strip()}")
    return AzureCliError(list(command), returncode, stderr)


class AzureCli:
    """
    Thin subprocess wrapper around the az binary.

    Args:
        az_path: Path or name of the az executable
        subscription: Optional subscription id passed to every command
        timeout_seconds: Per-command timeout
    """

    def __init__(
        self,
        az_path: str = "az",
        subscription: Optional[str] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.az_path = az_path
        self.subscription = subscription
        self.timeout_seconds = timeout_seconds

    def is_available(self) -> bool:
        return shutil.which(self.az_path) is not None

    def build_command(self, args: Sequence[str]) -> list[str]:
        command = [self.az_path, *args]
        if self.subscription and "--subscription" not in args:
            command.extend(["--subscription", self.subscription])
        if "--output" not in args and "-o" not in args:
            command.extend(["--output", "json"])
        return command

    def run(self, args: Sequence[str], timeout_seconds: Optional[float] = None) -> Any:
        """
        Run an az command and return its parsed JSON output.

        Args:
            args: Arguments after "az", e.g. ["group", "show", "--name", "rg"]
            timeout_seconds: Override the default timeout

        Returns:
            Parsed JSON (dict, list) or None when the command prints nothing

        Raises:
            TransientError: Timeouts and retryable service responses
            AuthenticationError: Denied or missing credentials
            AzureCliError: Any other non-zero exit
            ConfigurationError: If the az binary cannot be found
        """
        command = self.build_command(args)
        logger.debug(f"Running: az {' '.join(args[:3])}")

        try:
            completed = subprocess.run(
                command,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_seconds or self.timeout_seconds,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Command '{self.az_path}' could not be executed ({e.strerror or 'file not found'}). "
                "Ensure the Azure CLI is installed and available on PATH."
            ) from e
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"az {' '.join(args[:3])} timed out after {e.timeout}s") from e

        if completed.returncode != 0:
            raise classify_failure(list(args), completed.returncode, completed.stderr or "")

        stdout = (completed.stdout or "").strip()
        if not stdout:
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise AzureCliError(list(args), 0, f"Unparseable JSON output: {e}") from e
