"""Deterministic names for workers, sites, buckets and render artifacts.

Worker names follow the external contract::

    <family>--<version-dashed>--mem<memToken>--cpu<cpuToken>--t-<timeoutSeconds>

Every token is built from a restricted alphabet that never contains ``--``,
so distinct normalised configurations always map to distinct names. Other
systems predict and parse these names; do not change the format.
"""

import hashlib
import json
import re
import secrets
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from renderfleet.exceptions import InvalidConfigError
from renderfleet.schemas.worker import WorkerConfig

MAX_TIMEOUT_SECONDS = 3600
MAX_CPU = Decimal(8)

_VERSION_RE = re.compile(r"^\d+(\.\d+)*$")
_MEMORY_RE = re.compile(r"^([1-9]\d*)(mi|gi)$")
_FAMILY_RE = re.compile(r"^[a-z][a-z0-9]*(-[a-z0-9]+)*$")
_SITE_NAME_RE = re.compile(r"^[0-9a-zA-Z!_.*'()-]+$")
_NAME_RE = re.compile(
    r"^(?P<family>[a-z][a-z0-9]*(?:-[a-z0-9]+)*)"
    r"--(?P<version>\d+(?:-\d+)*)"
    r"--mem(?P<memory>[1-9]\d*(?:mi|gi))"
    r"--cpu(?P<cpu>\d+-\d+)"
    r"--t-(?P<timeout>[1-9]\d*)$"
)


def _field(config: WorkerConfig | Mapping[str, Any], name: str) -> Any:
    if isinstance(config, Mapping):
        value = config.get(name)
    else:
        value = getattr(config, name, None)
    if value is None or value == "":
        raise InvalidConfigError(f"Required field is missing: {name}", field=name)
    return value


def version_token(version: Any) -> str:
    """``3.3.96`` -> ``3-3-96``."""
    text = str(version).strip()
    if not _VERSION_RE.match(text):
        raise InvalidConfigError(field="version", value=version)
    return text.replace(".", "-")


def memory_token(memory: Any) -> str:
    """``2Gi`` -> ``2gi``. Only binary Mi/Gi quantities are accepted."""
    text = str(memory).strip().lower()
    if not _MEMORY_RE.match(text):
        raise InvalidConfigError(field="memory", value=memory)
    return text


def cpu_token(cpu: Any) -> str:
    """``1`` -> ``1-0``, ``0.5`` -> ``0-5``, ``2.50`` -> ``2-5``."""
    if isinstance(cpu, bool):
        raise InvalidConfigError(field="cpu", value=cpu)
    try:
        value = Decimal(str(cpu).strip())
    except InvalidOperation:
        raise InvalidConfigError(field="cpu", value=cpu) from None
    if not value.is_finite() or value <= 0 or value > MAX_CPU:
        raise InvalidConfigError(field="cpu", value=cpu)
    text = format(value.normalize(), "f")
    if "." not in text:
        text += ".0"
    return text.replace(".", "-")


def timeout_token(timeout_seconds: Any) -> str:
    if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, int):
        raise InvalidConfigError(field="timeout_seconds", value=timeout_seconds)
    if not 0 < timeout_seconds <= MAX_TIMEOUT_SECONDS:
        raise InvalidConfigError(
            f"timeout_seconds must be between 1 and {MAX_TIMEOUT_SECONDS}, got {timeout_seconds}",
            field="timeout_seconds",
        )
    return str(timeout_seconds)


def family_token(family: Any) -> str:
    text = str(family).strip()
    if not _FAMILY_RE.match(text):
        raise InvalidConfigError(field="family", value=family)
    return text


def derive_name(config: WorkerConfig | Mapping[str, Any], family: str | None = None) -> str:
    """Derive the worker name for a configuration.

    Pure function: no I/O, same input always yields the same name. ``family``
    overrides ``config.family``; one of the two must be set.

    Raises:
        InvalidConfigError: a required field is missing or out of domain.
    """
    if family is None:
        family = _field(config, "family")
    return "--".join(
        [
            family_token(family),
            version_token(_field(config, "version")),
            f"mem{memory_token(_field(config, 'memory'))}",
            f"cpu{cpu_token(_field(config, 'cpu'))}",
            f"t-{timeout_token(_field(config, 'timeout_seconds'))}",
        ]
    )


def parse_name(name: str) -> dict[str, str] | None:
    """Split a worker name back into its tokens, or None if it is not one.

    Tokens are returned in their encoded form (``3-3-96``, ``2gi``, ``1-0``).
    """
    match = _NAME_RE.match(name)
    if not match:
        return None
    return match.groupdict()


def is_family_name(name: str, family: str) -> bool:
    parsed = parse_name(name)
    return parsed is not None and parsed["family"] == family


# =============================================================================
# Sites, buckets and artifacts
# =============================================================================


def validate_site_name(site_name: str) -> str:
    if not site_name or not _SITE_NAME_RE.match(site_name):
        raise InvalidConfigError(
            f"Site name may only contain letters, digits and !_.*'()- : {site_name!r}",
            field="site_name",
        )
    return site_name


def make_site_id() -> str:
    return secrets.token_hex(5)


def make_job_id() -> str:
    return secrets.token_hex(8)


def site_prefix(site_id: str) -> str:
    return f"sites/{site_id}/"


def render_prefix(job_id: str) -> str:
    return f"renders/{job_id}/"


def final_output_key(job_id: str, extension: str) -> str:
    return f"{render_prefix(job_id)}out.{extension}"


def bucket_name(prefix: str, region: str, suffix: str) -> str:
    return f"{prefix}{region}-{suffix}"


def chunk_output_key(
    job_id: str,
    *,
    chunk_index: int,
    start_ms: int,
    end_ms: int,
    site_ref: str,
    composition: str,
    input_props: Mapping[str, Any] | None = None,
    extension: str = "mp4",
) -> str:
    """Content-derived output path for one chunk.

    Re-invoking the same chunk always targets the same key, so a duplicate
    write from a stale invocation overwrites identical content.
    """
    material = json.dumps(
        {
            "job": job_id,
            "chunk": chunk_index,
            "range": [start_ms, end_ms],
            "site": site_ref,
            "composition": composition,
            "props": dict(input_props or {}),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(material.encode()).hexdigest()[:24]
    return f"{render_prefix(job_id)}chunks/{chunk_index:05d}-{digest}.{extension}"
