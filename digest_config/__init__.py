"""
digest_config -- single public entrypoint for digest configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables for settings directly.  The one exception is
    the SMTP password, which the orchestrator reads from the environment
    variable the configuration names.

Architecture position:
    Configuration.  This package sits above ``digest_kernel`` and below
    ``digest_batch``.  The kernel MUST NEVER import from ``digest_config``.

Failure modes:
    - ``ConfigError`` -- missing file, malformed YAML, or invalid values.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``DIGEST_CONFIG_TRACE`` log entry with the config id, version and
    checksum, tying each run to the configuration that governed it.
"""

from __future__ import annotations

import os
from pathlib import Path

from digest_kernel.logging_config import get_logger

from digest_config.loader import compute_checksum, load_config
from digest_config.schema import DigestConfig

_logger = get_logger("config")

# Environment variable naming the configuration file to load
CONFIG_ENV_VAR = "DIGEST_CONFIG"

# Default configuration file shipped with the package
DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> DigestConfig:
    """The ONLY public configuration entrypoint.

    Resolution order: explicit ``path``, then ``$DIGEST_CONFIG``, then the
    packaged ``sets/default.yaml``.

    Raises:
        ConfigError: If the file is missing or fails to parse.
    """
    resolved = Path(path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    config = load_config(resolved)

    _logger.info(
        "DIGEST_CONFIG_TRACE",
        extra={
            "trace_type": "DIGEST_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "config_path": str(resolved),
        },
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG_PATH",
    "DigestConfig",
    "compute_checksum",
    "get_active_config",
    "load_config",
]
