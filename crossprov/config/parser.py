"""YAML configuration parser for crossprov.

This module parses crossprov.yaml files into typed dataclasses: the artifacts
to fetch, the retry policies, the manifest fetcher, and the static
environment table.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml

from crossprov.core.download import RetryPolicy
from crossprov.core.exceptions import ConfigError
from crossprov.core.filesystem import ARCHIVE_FORMATS, is_relative_to
from crossprov.cross.environment import (
    EnvironmentSpec,
    FlagBundle,
    TargetSpec,
    VariableSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "crossprov.yaml"
BUNDLED_CONFIG = Path(__file__).parent.parent / "data" / "cross-compile.yaml"
ENV_OVERRIDE_PREFIX = "CROSSPROV_"

MANIFEST_FETCHERS = ("builtin", "command")
DEFAULT_MANIFEST_COMMAND = (
    "tooltool.py",
    "--url={base_url}",
    "--manifest={manifest}",
    "fetch",
)

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class ArtifactDescriptor:
    """
    A single artifact to provision.

    Exactly one of url or manifest is set.
    """

    name: str
    destination: Path
    url: Optional[str] = None
    manifest: Optional[Path] = None
    format: Optional[str] = None  # 'tar.zst', 'tar.xz', ...; inferred from url if None
    subdir: Optional[str] = None  # directory inside the archive that becomes destination
    sha256: Optional[str] = None
    expect: Tuple[str, ...] = ()  # relative paths that must exist after install

    @property
    def is_manifest(self) -> bool:
        return self.manifest is not None


@dataclass(frozen=True)
class ManifestSettings:
    """How manifest-driven artifacts are fetched."""

    fetcher: str = "builtin"  # 'builtin' or 'command'
    base_url: str = ""
    command: Tuple[str, ...] = DEFAULT_MANIFEST_COMMAND
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class ProvisionConfig:
    """Complete crossprov configuration."""

    version: int
    variables: Dict[str, str] = field(default_factory=dict)
    artifacts: List[ArtifactDescriptor] = field(default_factory=list)
    environment: EnvironmentSpec = field(default_factory=EnvironmentSpec)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    manifest: ManifestSettings = field(default_factory=ManifestSettings)
    jobs: int = 1
    deadline_seconds: Optional[float] = None
    lock_timeout_seconds: float = 600

    def artifact(self, name: str) -> ArtifactDescriptor:
        for descriptor in self.artifacts:
            if descriptor.name == name:
                return descriptor
        raise KeyError(name)


def find_config(project_root: Optional[Path] = None) -> Path:
    """
    Locate the configuration file to use.

    Returns ./crossprov.yaml when present, otherwise the bundled configuration.
    """
    candidate = Path(project_root or Path.cwd()) / DEFAULT_CONFIG_NAME
    if candidate.exists():
        return candidate
    return BUNDLED_CONFIG


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProvisionConfig:
    """
    Parse a crossprov.yaml configuration file.

    Args:
        config_path: Path to the YAML file (default: see find_config())
        environ: Environment used for CROSSPROV_* overrides (default: os.environ)

    Returns:
        Parsed and validated configuration

    Raises:
        ConfigError: If configuration is invalid
    """
    config_path = Path(config_path) if config_path else find_config()
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    logger.debug(f"Loading configuration from {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e

    if data is None:
        raise ConfigError(f"Configuration file is empty: {config_path}")

    return parse_config(data, os.environ if environ is None else environ)


def parse_config(data: dict, environ: Optional[Mapping[str, str]] = None) -> ProvisionConfig:
    """Parse and validate configuration data."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")

    if "version" not in data:
        raise ConfigError("Missing required field: version")
    if data["version"] != 1:
        raise ConfigError(f"Unsupported version: {data['version']} (expected 1)")

    variables = _parse_variables(data.get("variables") or {}, environ or {})

    artifacts = [
        _parse_artifact(item, variables) for item in data.get("artifacts") or []
    ]
    if not artifacts:
        raise ConfigError("At least one artifact must be defined")
    _check_artifacts(artifacts)

    retry = _parse_retry(data.get("retry"), RetryPolicy(), "retry")
    manifest = _parse_manifest_settings(data.get("manifest") or {}, retry, variables)

    jobs = data.get("jobs", 1)
    if not isinstance(jobs, int) or isinstance(jobs, bool) or jobs < 1:
        raise ConfigError(f"jobs must be a positive integer, got {jobs!r}")

    deadline = data.get("deadline_seconds")
    if deadline is not None:
        deadline = _positive_number(deadline, "deadline_seconds")

    return ProvisionConfig(
        version=data["version"],
        variables=variables,
        artifacts=artifacts,
        environment=_parse_environment(data.get("environment") or {}),
        retry=retry,
        manifest=manifest,
        jobs=jobs,
        deadline_seconds=deadline,
        lock_timeout_seconds=_positive_number(
            data.get("lock_timeout_seconds", 600), "lock_timeout_seconds"
        ),
    )


def _expand(template: str, values: Mapping[str, str], where: str) -> str:
    """Expand '{name}' placeholders from configuration variables."""
    try:
        return str(template).format_map(values)
    except KeyError as e:
        raise ConfigError(f"{where}: unknown variable {e}") from e
    except (ValueError, IndexError, AttributeError) as e:
        raise ConfigError(f"{where}: invalid template {template!r}: {e}") from e


def _parse_variables(data: dict, environ: Mapping[str, str]) -> Dict[str, str]:
    """
    Parse the variables section.

    A variable may reference variables declared before it. CROSSPROV_<NAME>
    in the environment replaces the configured value before expansion.
    """
    if not isinstance(data, dict):
        raise ConfigError("variables must be a mapping")

    variables: Dict[str, str] = {}
    for name, raw in data.items():
        if not _NAME_PATTERN.match(str(name)):
            raise ConfigError(f"Invalid variable name: {name!r}")
        override_key = ENV_OVERRIDE_PREFIX + str(name).upper()
        if override_key in environ:
            logger.debug(f"Variable {name} overridden by {override_key}")
            raw = environ[override_key]
        variables[name] = _expand(str(raw), variables, f"variables.{name}")
    return variables


def _positive_number(value, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{where} must be a positive number, got {value!r}")
    return value


def _parse_retry(data: Optional[dict], default: RetryPolicy, where: str) -> RetryPolicy:
    """Parse a retry policy, filling unset fields from default."""
    if data is None:
        return default
    if not isinstance(data, dict):
        raise ConfigError(f"{where} must be a mapping")

    unknown = set(data) - {"max_attempts", "delay_seconds", "timeout_seconds"}
    if unknown:
        raise ConfigError(f"{where}: unknown keys: {', '.join(sorted(unknown))}")

    try:
        return RetryPolicy(
            max_attempts=data.get("max_attempts", default.max_attempts),
            delay_seconds=data.get("delay_seconds", default.delay_seconds),
            timeout_seconds=data.get("timeout_seconds", default.timeout_seconds),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{where}: {e}") from e


def _parse_manifest_settings(
    data: dict, http_retry: RetryPolicy, variables: Mapping[str, str]
) -> ManifestSettings:
    """Parse manifest fetcher settings."""
    fetcher = data.get("fetcher", "builtin")
    if fetcher not in MANIFEST_FETCHERS:
        raise ConfigError(
            f"Invalid manifest fetcher: {fetcher} (expected one of {list(MANIFEST_FETCHERS)})"
        )

    command = data.get("command", DEFAULT_MANIFEST_COMMAND)
    if isinstance(command, str) or not command:
        raise ConfigError("manifest.command must be a non-empty list")

    return ManifestSettings(
        fetcher=fetcher,
        base_url=_expand(data.get("base_url", ""), variables, "manifest.base_url"),
        command=tuple(str(part) for part in command),
        retry=_parse_retry(data.get("retry"), http_retry, "manifest.retry"),
    )


def _parse_artifact(data: dict, variables: Mapping[str, str]) -> ArtifactDescriptor:
    """Parse one artifact entry."""
    if not isinstance(data, dict):
        raise ConfigError("Each artifact must be a mapping")

    name = data.get("name")
    if not name or not _NAME_PATTERN.match(str(name)):
        raise ConfigError(
            f"Artifact name must be an identifier (letters, digits, _), got {name!r}"
        )
    where = f"artifacts.{name}"

    if "destination" not in data:
        raise ConfigError(f"{where}: missing required field: destination")

    has_url = "url" in data
    has_manifest = "manifest" in data
    if has_url == has_manifest:
        raise ConfigError(f"{where}: exactly one of 'url' or 'manifest' is required")

    archive_format = data.get("format")
    if archive_format is not None:
        if has_manifest:
            raise ConfigError(f"{where}: 'format' does not apply to manifest artifacts")
        if archive_format not in ARCHIVE_FORMATS:
            raise ConfigError(
                f"{where}: invalid format {archive_format!r} "
                f"(expected one of {list(ARCHIVE_FORMATS)})"
            )

    if has_manifest and data.get("subdir"):
        raise ConfigError(f"{where}: 'subdir' does not apply to manifest artifacts")
    if has_manifest and data.get("sha256"):
        raise ConfigError(
            f"{where}: 'sha256' does not apply to manifest artifacts; "
            "digests come from the manifest"
        )

    expect = data.get("expect") or []
    if isinstance(expect, str):
        expect = [expect]

    return ArtifactDescriptor(
        name=name,
        destination=Path(_expand(data["destination"], variables, f"{where}.destination")),
        url=_expand(data["url"], variables, f"{where}.url") if has_url else None,
        manifest=(
            Path(_expand(data["manifest"], variables, f"{where}.manifest"))
            if has_manifest
            else None
        ),
        format=archive_format,
        subdir=data.get("subdir"),
        sha256=data.get("sha256"),
        expect=tuple(_expand(e, variables, f"{where}.expect") for e in expect),
    )


def _check_artifacts(artifacts: List[ArtifactDescriptor]) -> None:
    """Names must be unique and destinations disjoint."""
    seen = set()
    for descriptor in artifacts:
        if descriptor.name in seen:
            raise ConfigError(f"Duplicate artifact name: {descriptor.name}")
        seen.add(descriptor.name)

    for i, first in enumerate(artifacts):
        for second in artifacts[i + 1 :]:
            a = Path(os.path.abspath(first.destination))
            b = Path(os.path.abspath(second.destination))
            if is_relative_to(a, b) or is_relative_to(b, a):
                raise ConfigError(
                    f"Artifacts {first.name} and {second.name} have overlapping "
                    f"destinations: {a}, {b}"
                )


def _parse_variable_spec(data: dict, where: str) -> VariableSpec:
    """Parse one variable entry: attribute plus exactly one of path/value/flags."""
    if not isinstance(data, dict) or "attribute" not in data:
        raise ConfigError(f"{where}: each variable needs an 'attribute'")

    kinds = [kind for kind in ("path", "value", "flags") if kind in data]
    if len(kinds) != 1:
        raise ConfigError(
            f"{where}.{data['attribute']}: exactly one of path, value or flags is required"
        )
    kind = kinds[0]

    if kind == "flags":
        tokens = data["flags"]
        if isinstance(tokens, str) or not isinstance(tokens, list):
            raise ConfigError(f"{where}.{data['attribute']}: flags must be a list of tokens")
        return VariableSpec(
            attribute=str(data["attribute"]),
            kind="flags",
            flags=FlagBundle(tuple(str(t) for t in tokens)),
        )

    return VariableSpec(attribute=str(data["attribute"]), kind=kind, value=str(data[kind]))


def _parse_environment(data: dict) -> EnvironmentSpec:
    """Parse the environment section."""
    if not isinstance(data, dict):
        raise ConfigError("environment must be a mapping")

    targets = []
    for target_data in data.get("targets") or []:
        if not isinstance(target_data, dict) or "triple" not in target_data:
            raise ConfigError("Each environment target must specify 'triple'")
        triple = target_data["triple"]
        where = f"environment.targets.{triple}"
        targets.append(
            TargetSpec(
                triple=triple,
                variables=tuple(
                    _parse_variable_spec(v, where)
                    for v in target_data.get("variables") or []
                ),
            )
        )

    path_append = data.get("path_append") or []
    if isinstance(path_append, str):
        path_append = [path_append]

    return EnvironmentSpec(
        prefix=str(data.get("prefix", "")),
        targets=tuple(targets),
        globals=tuple(
            _parse_variable_spec(v, "environment.globals")
            for v in data.get("globals") or []
        ),
        path_append=tuple(str(p) for p in path_append),
    )
