"""
provchestra - Two-phase infrastructure deployment orchestrator

Phase 1 provisions a dependency-ordered resource graph in one atomic
deployment. Phase 2 runs idempotent, retryable post-deployment
configuration steps against the outputs Phase 1 produced.
"""

__version__ = "0.1.0"


__all__ = ["DeploymentConfig", "load_config", "get_provchestra_home"]

from .config import DeploymentConfig, load_config, get_provchestra_home
