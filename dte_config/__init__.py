"""
dte_config -- single public entrypoint for issuance configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains
    configuration.  It loads the jurisdiction's YAML fragment from
    ``dte_config/sets/``, resolves the requested Authority environment
    and returns a frozen ``AuthorityConfig``.

Architecture position:
    Configuration -- sits above ``dte_kernel`` and below ``dte_services``.
    The kernel never imports ``dte_config``; it receives policy structs at
    construction.

Failure modes:
    - ``FileNotFoundError`` -- no fragment for the jurisdiction.
    - ``ValueError`` -- unknown environment or invalid values.

Audit relevance:
    Every successful call emits a ``DTE_CONFIG_TRACE`` log entry with the
    jurisdiction, environment and checksum, tying each submission to the
    configuration that governed it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from dte_config.loader import load_yaml_file, parse_authority_config
from dte_config.schema import AuthorityConfig

_logger = logging.getLogger("dte_kernel.config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_active_config(
    jurisdiction: str = "CL",
    environment: str | None = None,
    config_dir: Path | None = None,
) -> AuthorityConfig:
    """
    Load and resolve the configuration for ``jurisdiction``.

    Args:
        environment: Authority environment name (e.g. ``certification``,
            ``production``); the fragment's default when None.
        config_dir: Override of the sets directory.
    """
    sets_dir = Path(config_dir) if config_dir is not None else _DEFAULT_CONFIG_DIR
    path = sets_dir / f"{jurisdiction.lower()}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"No configuration for jurisdiction {jurisdiction!r}: {path}")

    config = parse_authority_config(load_yaml_file(path), environment)

    _logger.info(
        "DTE_CONFIG_TRACE",
        extra={
            "trace_type": "DTE_CONFIG_TRACE",
            "jurisdiction": config.jurisdiction,
            "environment": config.environment,
            "checksum": config.checksum,
            "authority": config.authority_name,
            "document_kind_count": len(config.document_kinds),
        },
    )
    return config


__all__ = ["AuthorityConfig", "get_active_config"]
