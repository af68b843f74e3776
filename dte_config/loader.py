"""
Configuration loader (``dte_config.loader``).

Responsibility
--------------
Reads a jurisdiction YAML fragment and parses it into an
``AuthorityConfig``.  Runtime callers go through
``dte_config.get_active_config()``; this module is its implementation.

Invariants enforced
-------------------
* Required keys have no silent defaults: a missing key raises ``KeyError``.
* Decimal values are parsed from their string form, never through float.
* ``compute_checksum`` is deterministic over the parsed YAML.

Failure modes
-------------
* Missing file -> ``FileNotFoundError``.
* Malformed YAML -> ``yaml.YAMLError``.
* Unknown environment or invalid values -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from dte_config.schema import AuthorityConfig
from dte_kernel.domain.policies import (
    DocumentKindDef,
    EndpointSet,
    FolioPolicy,
    PollingPolicy,
    RetryPolicy,
    SessionPolicy,
    SigningConfig,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Raises:
        FileNotFoundError, yaml.YAMLError
    """
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{name} is not a decimal: {value!r}") from exc


def parse_endpoints(base_url: str, paths: dict[str, str]) -> EndpointSet:
    base = base_url.rstrip("/")
    return EndpointSet(
        seed_url=base + paths["seed"],
        token_url=base + paths["token"],
        upload_url=base + paths["upload"],
        status_url=base + paths["status"],
    )


def parse_document_kind(data: dict[str, Any]) -> DocumentKindDef:
    return DocumentKindDef(
        code=int(data["code"]),
        name=data["name"],
        exempt_only=bool(data.get("exempt_only", False)),
        requires_reference=bool(data.get("requires_reference", False)),
    )


def parse_authority_config(data: dict[str, Any], environment: str | None = None) -> AuthorityConfig:
    """
    Build an AuthorityConfig from a parsed fragment.

    Args:
        environment: Name under ``environments``; defaults to
            ``default_environment``.
    """
    authority = data["authority"]
    environments = data["environments"]
    env_name = environment or data["default_environment"]
    if env_name not in environments:
        raise ValueError(
            f"Unknown environment {env_name!r}; expected one of {sorted(environments)}"
        )

    transport = data.get("transport", {})
    retry = transport.get("retry", {})
    session = data.get("session", {})
    signing = data.get("signing", {})
    folio = data.get("folio", {})
    polling = data.get("polling", {})

    return AuthorityConfig(
        jurisdiction=data["jurisdiction"],
        authority_name=authority["name"],
        authority_rut=authority["rut"],
        currency=data["currency"],
        tax_rate=_decimal(data["tax_rate"], "tax_rate"),
        environment=env_name,
        endpoints=parse_endpoints(environments[env_name]["base_url"], data["endpoints"]),
        timeout_seconds=float(transport.get("timeout_seconds", 30)),
        retry=RetryPolicy(
            attempts=int(retry.get("attempts", 3)),
            backoff_seconds=float(retry.get("backoff_seconds", 1.0)),
            backoff_multiplier=float(retry.get("backoff_multiplier", 2.0)),
            max_backoff_seconds=float(retry.get("max_backoff_seconds", 30.0)),
        ),
        session=SessionPolicy(
            token_ttl_seconds=int(session.get("token_ttl_seconds", 3000)),
            immediate_retries=int(session.get("immediate_retries", 1)),
        ),
        signing=SigningConfig(
            signature_algorithm=signing.get("signature_algorithm", "rsa-sha1"),
            digest_algorithm=signing.get("digest_algorithm", "sha1"),
            encoding=signing.get("encoding", "ISO-8859-1"),
        ),
        document_kinds=tuple(parse_document_kind(k) for k in data["document_kinds"]),
        folio=FolioPolicy(
            renewal_threshold_pct=_decimal(
                folio.get("renewal_threshold_pct", "80"), "folio.renewal_threshold_pct"
            ),
        ),
        polling=PollingPolicy(
            interval_seconds=float(polling.get("interval_seconds", 300)),
            min_recheck_seconds=float(polling.get("min_recheck_seconds", 60)),
            batch_limit=int(polling.get("batch_limit", 50)),
        ),
        checksum=compute_checksum(data),
    )
