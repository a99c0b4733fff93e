"""
Cross-compilation environment configuration.

This module turns the static per-target configuration table and the
locations of extracted artifacts into the environment variables a downstream
build tool reads, for example::

    ORG_GRADLE_PROJECT_RUST_ANDROID_GRADLE_TARGET_X86_64_APPLE_DARWIN_CC=/builds/worker/clang/bin/clang

The result is an immutable EnvironmentConfig. Nothing here touches
os.environ; run_with_environment() is the one place the configuration is
handed to a child process.
"""

import json
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from crossprov.core.exceptions import ConfigError, MissingArtifact

logger = logging.getLogger(__name__)

VARIABLE_KINDS = ("path", "flags", "value")


@dataclass(frozen=True)
class FlagBundle:
    """
    Ordered list of flag tokens for one tool invocation.

    Tokens are kept separate until serialize() joins them into the flat,
    space-separated form that tools such as rustc (RUSTFLAGS) or cc (CFLAGS)
    read. A token containing whitespace cannot survive that and is rejected.
    """

    tokens: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "tokens", tuple(str(t) for t in self.tokens))

    def __iter__(self) -> Iterator[str]:
        return iter(self.tokens)

    def __len__(self) -> int:
        return len(self.tokens)

    def serialize(self) -> str:
        """
        Join tokens into a flat string.

        Raises:
            ValueError: If a token is empty or contains whitespace
        """
        for token in self.tokens:
            if not token or any(c.isspace() for c in token):
                raise ValueError(f"Flag token cannot be serialized: {token!r}")
        return " ".join(self.tokens)


@dataclass(frozen=True)
class VariableSpec:
    """
    One environment variable in the static configuration table.

    Attributes:
        attribute: Variable role, e.g. 'CC', 'AR', 'RUSTFLAGS'. May embed
            '{triple_ident}' (e.g. 'CFLAGS_{triple_ident}').
        kind: 'path' (must exist on disk), 'flags' (FlagBundle) or 'value'
        value: Template string for 'path' and 'value' kinds
        flags: Template tokens for the 'flags' kind
    """

    attribute: str
    kind: str = "value"
    value: str = ""
    flags: FlagBundle = field(default_factory=FlagBundle)


@dataclass(frozen=True)
class TargetSpec:
    """Variables for one target triple, e.g. 'x86_64-apple-darwin'."""

    triple: str
    variables: Tuple[VariableSpec, ...] = ()

    @property
    def ident(self) -> str:
        """Triple as an identifier fragment: 'x86_64-apple-darwin' -> 'x86_64_apple_darwin'."""
        return self.triple.replace("-", "_").replace(".", "_")


@dataclass(frozen=True)
class EnvironmentSpec:
    """Static configuration table for the environment."""

    prefix: str = ""
    targets: Tuple[TargetSpec, ...] = ()
    globals: Tuple[VariableSpec, ...] = ()
    path_append: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EnvironmentConfig:
    """
    Immutable environment configuration produced by build_environment().

    Attributes:
        variables: Ordered read-only mapping of variable name to value
        path_append: Directories appended to PATH for the child process
    """

    variables: Mapping[str, str] = field(default_factory=dict)
    path_append: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))
        object.__setattr__(self, "path_append", tuple(self.path_append))

    def __getitem__(self, name: str) -> str:
        return self.variables[name]

    def __contains__(self, name: object) -> bool:
        return name in self.variables

    def to_dict(self) -> Dict[str, str]:
        """Plain copy of the variables, PATH additions excluded."""
        return dict(self.variables)

    def child_environment(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Compose the environment for a child process.

        Args:
            base: Environment to start from (default: os.environ)

        Returns:
            New dict; base is not modified
        """
        env = dict(os.environ if base is None else base)
        env.update(self.variables)
        if self.path_append:
            parts = [env["PATH"]] if env.get("PATH") else []
            parts.extend(self.path_append)
            env["PATH"] = os.pathsep.join(parts)
        return env

    def to_shell(self) -> str:
        """
        Render as POSIX shell export statements.

        Example:
            >>> print(EnvironmentConfig({"TARGET_CFLAGS": "-DNDEBUG"}).to_shell())
            export TARGET_CFLAGS=-DNDEBUG
        """
        lines = []
        if self.path_append:
            lines.append(
                'export PATH="$PATH"'
                + shlex.quote(os.pathsep + os.pathsep.join(self.path_append))
            )
        for name, value in self.variables.items():
            lines.append(f"export {name}={shlex.quote(value)}")
        return "\n".join(lines)

    def to_json(self) -> str:
        """Render as a JSON object."""
        return json.dumps(
            {"variables": dict(self.variables), "path_append": list(self.path_append)},
            indent=2,
        )


class _PlaceholderValues(Mapping):
    """
    Values available to '{name}' templates.

    Artifact names resolve to their extracted directory and must exist.
    Unknown names are treated as missing artifacts.
    """

    def __init__(self, artifacts: Mapping[str, Path], variables: Mapping[str, str]):
        self._artifacts = {name: Path(path) for name, path in artifacts.items()}
        self._variables = dict(variables)

    def __getitem__(self, key: str) -> str:
        if key in self._artifacts:
            path = self._artifacts[key]
            if not path.exists():
                raise MissingArtifact(f"Extracted path does not exist: {path}", key)
            return str(path)
        if key in self._variables:
            return str(self._variables[key])
        raise MissingArtifact(
            f"No extracted artifact or variable named '{key}'", key
        )

    def __iter__(self):
        yield from self._artifacts
        yield from self._variables

    def __len__(self) -> int:
        return len(self._artifacts) + len(self._variables)


def _render(template: str, values: Mapping[str, str]) -> str:
    try:
        return template.format_map(values)
    except (ValueError, IndexError, AttributeError) as e:
        raise ConfigError(f"Invalid template {template!r}: {e}") from e


def _render_variable(
    spec: VariableSpec, values: Mapping[str, str], name: str
) -> str:
    if spec.kind == "flags":
        bundle = FlagBundle(tuple(_render(t, values) for t in spec.flags))
        try:
            return bundle.serialize()
        except ValueError as e:
            raise ConfigError(f"{name}: {e}") from e

    rendered = _render(spec.value, values)
    if spec.kind == "path" and not Path(rendered).exists():
        raise MissingArtifact(f"{name} points to a missing path: {rendered}")
    return rendered


def variable_name(prefix: str, target: Optional[TargetSpec], attribute: str) -> str:
    """
    Compose a variable name from prefix, target triple and role.

    Example:
        >>> variable_name("PFX_", TargetSpec("x86_64-apple-darwin"), "CFLAGS_{triple_ident}")
        'PFX_X86_64_APPLE_DARWIN_CFLAGS_x86_64_apple_darwin'
    """
    if target is None:
        return attribute
    attribute = attribute.replace("{triple_ident}", target.ident)
    return f"{prefix}{target.ident.upper()}_{attribute}"


def build_environment(
    extracted_paths: Mapping[str, Path],
    static_config: EnvironmentSpec,
    variables: Optional[Mapping[str, str]] = None,
) -> EnvironmentConfig:
    """
    Build the environment configuration from extracted artifact locations.

    Args:
        extracted_paths: Artifact name -> directory it was installed into
        static_config: Per-target variable table
        variables: Additional template values (install root, SDK version, ...)

    Returns:
        A complete EnvironmentConfig

    Raises:
        MissingArtifact: If a template references an artifact that is absent,
            or a 'path' variable resolves to a path that does not exist
        ConfigError: If a template is malformed or two variables share a name

    Example:
        >>> spec = EnvironmentSpec(
        ...     prefix="PFX_",
        ...     targets=(TargetSpec("x86_64-apple-darwin",
        ...                         (VariableSpec("CC", "path", "{clang}/bin/clang"),)),),
        ... )
        >>> env = build_environment({"clang": Path("/builds/worker/clang")}, spec)
        >>> env["PFX_X86_64_APPLE_DARWIN_CC"]
        '/builds/worker/clang/bin/clang'
    """
    base_values = dict(variables or {})
    result: Dict[str, str] = {}

    def add(name: str, value: str) -> None:
        if name in result:
            raise ConfigError(f"Environment variable defined twice: {name}")
        result[name] = value

    for target in static_config.targets:
        values = _PlaceholderValues(
            extracted_paths,
            {**base_values, "triple": target.triple, "triple_ident": target.ident},
        )
        for spec in target.variables:
            name = variable_name(static_config.prefix, target, spec.attribute)
            add(name, _render_variable(spec, values, name))

    global_values = _PlaceholderValues(extracted_paths, base_values)
    for spec in static_config.globals:
        add(spec.attribute, _render_variable(spec, global_values, spec.attribute))

    path_append: List[str] = []
    for template in static_config.path_append:
        entry = _render(template, global_values)
        if not Path(entry).is_dir():
            raise MissingArtifact(f"PATH entry does not exist: {entry}")
        path_append.append(entry)

    logger.debug(f"Built environment with {len(result)} variables")
    return EnvironmentConfig(result, tuple(path_append))


def run_with_environment(
    command: Sequence[str],
    config: EnvironmentConfig,
    base: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
) -> int:
    """
    Run a command with the environment configuration injected.

    Args:
        command: Command and arguments
        config: Environment to inject
        base: Environment to start from (default: os.environ)
        cwd: Working directory for the command

    Returns:
        The command's exit status
    """
    if not command:
        raise ValueError("Command cannot be empty")

    logger.info(f"Running: {shlex.join(command)}")
    completed = subprocess.run(
        list(command), env=config.child_environment(base), cwd=cwd
    )
    return completed.returncode
