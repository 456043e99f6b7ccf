"""YAML configuration loading for stratum.

A configuration directory holds any number of ``*.yaml``/``*.yml`` files
which are merged into one module. Child modules are directories referenced
through ``modules.<name>.source``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError
from .expressions import parse_value
from .models import Lifecycle

logger = logging.getLogger(__name__)

SECTIONS = ("variables", "providers", "backend", "resources", "data", "modules", "outputs")
RESOURCE_META_KEYS = ("provider", "depends_on", "lifecycle")
VARIABLE_TYPES = ("any", "string", "number", "bool", "list", "map")
VAR_ENV_PREFIX = "STRATUM_VAR_"

_MISSING: Any = object()


@dataclass(frozen=True)
class VariableDecl:
    """Input variable declaration."""

    name: str
    default: Any = _MISSING
    type: str = "any"
    description: str = ""

    @property
    def required(self) -> bool:
        return self.default is _MISSING

    @classmethod
    def from_dict(cls, name: str, d: dict[str, Any] | None) -> VariableDecl:
        d = d or {}
        var_type = d.get("type", "any")
        if var_type not in VARIABLE_TYPES:
            raise ConfigurationError(
                f"Variable '{name}' has unknown type '{var_type}' "
                f"(expected one of: {', '.join(VARIABLE_TYPES)})"
            )
        return cls(
            name=name,
            default=d.get("default", _MISSING),
            type=var_type,
            description=d.get("description", ""),
        )

    def coerce(self, value: Any) -> Any:
        """Convert a raw value (often CLI/environment text) to the declared type."""
        if isinstance(value, str) and self.type not in ("string", "any"):
            value = yaml.safe_load(value) if value.strip() else None
        checks: dict[str, tuple[type, ...]] = {
            "string": (str,),
            "number": (int, float),
            "bool": (bool,),
            "list": (list,),
            "map": (dict,),
        }
        expected = checks.get(self.type)
        if expected is None:
            return value
        if self.type == "number" and isinstance(value, bool):
            expected = ()
        if self.type == "string" and isinstance(value, int | float) and not isinstance(value, bool):
            return str(value)
        if not isinstance(value, expected):
            raise ConfigurationError(
                f"Variable '{self.name}' expects a {self.type}, got {type(value).__name__}"
            )
        return value


@dataclass(frozen=True)
class ProviderDecl:
    """Provider instance declaration: adapter kind plus opaque options."""

    name: str
    kind: str
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, d: dict[str, Any] | None) -> ProviderDecl:
        d = dict(d or {})
        kind = d.pop("kind", name)
        return cls(name=name, kind=kind, options=d)


@dataclass(frozen=True)
class BackendDecl:
    """State backend declaration."""

    type: str = "local"
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> BackendDecl:
        d = dict(d or {})
        return cls(type=d.pop("type", "local"), options=d)


@dataclass(frozen=True)
class ResourceDecl:
    """A resource or data source block, attributes parsed into expressions."""

    resource_type: str
    name: str
    mode: str
    provider: str | None
    attributes: dict[str, Any]
    depends_on: tuple[str, ...] = ()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @classmethod
    def from_dict(
        cls, resource_type: str, name: str, d: dict[str, Any] | None, mode: str = "managed"
    ) -> ResourceDecl:
        d = dict(d or {})
        where = f"{'data.' if mode == 'data' else ''}{resource_type}.{name}"
        provider = d.pop("provider", None)
        depends_on = d.pop("depends_on", []) or []
        lifecycle_raw = d.pop("lifecycle", None)
        if not isinstance(depends_on, list) or not all(isinstance(x, str) for x in depends_on):
            raise ConfigurationError(f"{where}: depends_on must be a list of addresses")
        if mode == "data" and lifecycle_raw:
            raise ConfigurationError(f"{where}: data sources do not support lifecycle")
        try:
            lifecycle = Lifecycle.from_dict(lifecycle_raw)
        except ValueError as e:
            raise ConfigurationError(f"{where}: {e}") from e
        try:
            attributes = parse_value(d)
        except ValueError as e:
            raise ConfigurationError(f"{where}: {e}") from e
        return cls(
            resource_type=resource_type,
            name=name,
            mode=mode,
            provider=provider,
            attributes=attributes,
            depends_on=tuple(depends_on),
            lifecycle=lifecycle,
        )


@dataclass(frozen=True)
class ModuleCall:
    """A ``modules`` block: child module source, inputs and dependencies."""

    name: str
    source: str
    inputs: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, name: str, d: dict[str, Any] | None) -> ModuleCall:
        d = d or {}
        if "source" not in d:
            raise ConfigurationError(f"module.{name}: 'source' is required")
        try:
            inputs = parse_value(d.get("inputs", {}) or {})
        except ValueError as e:
            raise ConfigurationError(f"module.{name}: {e}") from e
        return cls(
            name=name,
            source=d["source"],
            inputs=inputs,
            depends_on=tuple(d.get("depends_on", []) or []),
        )


@dataclass(frozen=True)
class OutputDecl:
    """Module output declaration."""

    name: str
    value: Any
    description: str = ""

    @classmethod
    def from_dict(cls, name: str, d: Any) -> OutputDecl:
        # Shorthand: "name: ${expr}"
        if not isinstance(d, dict) or "value" not in d:
            d = {"value": d}
        try:
            value = parse_value(d["value"])
        except ValueError as e:
            raise ConfigurationError(f"output.{name}: {e}") from e
        return cls(name=name, value=value, description=d.get("description", ""))


@dataclass(frozen=True)
class ModuleConfig:
    """Everything declared in one module directory."""

    path: Path
    variables: dict[str, VariableDecl] = field(default_factory=dict)
    providers: dict[str, ProviderDecl] = field(default_factory=dict)
    backend: BackendDecl | None = None
    resources: list[ResourceDecl] = field(default_factory=list)
    modules: dict[str, ModuleCall] = field(default_factory=dict)
    outputs: dict[str, OutputDecl] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict[str, Any], path: Path) -> ModuleConfig:
        unknown = set(d) - set(SECTIONS)
        if unknown:
            raise ConfigurationError(
                f"{path}: unknown top-level keys: {', '.join(sorted(unknown))}"
            )

        resources: list[ResourceDecl] = []
        for section, mode in (("resources", "managed"), ("data", "data")):
            for resource_type, blocks in (d.get(section) or {}).items():
                if not isinstance(blocks, dict):
                    raise ConfigurationError(
                        f"{path}: {section}.{resource_type} must map names to resource blocks"
                    )
                for name, body in blocks.items():
                    resources.append(ResourceDecl.from_dict(resource_type, name, body, mode))

        return cls(
            path=path,
            variables={
                n: VariableDecl.from_dict(n, v) for n, v in (d.get("variables") or {}).items()
            },
            providers={
                n: ProviderDecl.from_dict(n, v) for n, v in (d.get("providers") or {}).items()
            },
            backend=BackendDecl.from_dict(d["backend"]) if d.get("backend") else None,
            resources=resources,
            modules={n: ModuleCall.from_dict(n, v) for n, v in (d.get("modules") or {}).items()},
            outputs={n: OutputDecl.from_dict(n, v) for n, v in (d.get("outputs") or {}).items()},
        )

    @classmethod
    def from_yaml(cls, yaml_str: str, path: Path | None = None) -> ModuleConfig:
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a YAML mapping")
        return cls.from_dict(data, path or Path("."))


def _config_files(path: Path) -> list[Path]:
    if path.is_file():
        return [path]
    if not path.is_dir():
        raise ConfigurationError(f"Configuration path not found: {path}")
    files = sorted(p for p in path.iterdir() if p.suffix in (".yaml", ".yml") and p.is_file())
    if not files:
        raise ConfigurationError(f"No *.yaml configuration files in {path}")
    return files


def _merge_documents(docs: list[tuple[Path, dict[str, Any]]]) -> dict[str, Any]:
    """Merge top-level sections of several files, rejecting duplicates."""
    merged: dict[str, Any] = {}
    for file_path, doc in docs:
        for section, body in doc.items():
            if section == "backend":
                if "backend" in merged:
                    raise ConfigurationError(f"{file_path}: backend declared more than once")
                merged["backend"] = body
                continue
            if section not in SECTIONS:
                raise ConfigurationError(f"{file_path}: unknown top-level key '{section}'")
            if not isinstance(body, dict):
                raise ConfigurationError(f"{file_path}: '{section}' must be a mapping")
            target = merged.setdefault(section, {})
            for key, value in body.items():
                if section in ("resources", "data"):
                    blocks = target.setdefault(key, {})
                    for name, block in (value or {}).items():
                        if name in blocks:
                            raise ConfigurationError(
                                f"{file_path}: duplicate {section} '{key}.{name}'"
                            )
                        blocks[name] = block
                elif key in target:
                    raise ConfigurationError(f"{file_path}: duplicate {section} '{key}'")
                else:
                    target[key] = value
    return merged


def load_module(path: Path) -> ModuleConfig:
    """Load and merge all configuration files of one module directory (or file)."""
    docs: list[tuple[Path, dict[str, Any]]] = []
    for file_path in _config_files(path):
        logger.debug("Loading configuration file %s", file_path)
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{file_path}: invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{file_path}: configuration must be a YAML mapping")
        docs.append((file_path, data))
    module_dir = path if path.is_dir() else path.parent
    return ModuleConfig.from_dict(_merge_documents(docs), module_dir)


@dataclass
class Configuration:
    """
    A root module plus the values of its input variables.

    Child modules are loaded on demand and cached by resolved directory.
    """

    root: ModuleConfig
    variables: dict[str, Any] = field(default_factory=dict)
    _modules: dict[Path, ModuleConfig] = field(default_factory=dict, repr=False)

    @property
    def providers(self) -> dict[str, ProviderDecl]:
        return self.root.providers

    @property
    def backend(self) -> BackendDecl | None:
        return self.root.backend

    def child(self, parent: ModuleConfig, call: ModuleCall) -> ModuleConfig:
        """Load the module referenced by a module call relative to its parent."""
        source = (parent.path / call.source).resolve()
        if source not in self._modules:
            module = load_module(source)
            if module.backend is not None or module.providers:
                raise ConfigurationError(
                    f"module.{call.name} ({source}): only the root module may declare "
                    "backend or providers"
                )
            self._modules[source] = module
        return self._modules[source]


def resolve_variables(
    declarations: dict[str, VariableDecl],
    cli_vars: dict[str, str] | None = None,
    var_files: list[str | Path] | None = None,
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """
    Compute root variable values.

    Precedence, lowest first: declared default, ``STRATUM_VAR_<name>``
    environment variables, var files in order, ``--var`` values.

    Raises:
        ConfigurationError: Unknown variable given, or required variable missing
    """
    environ = os.environ if environ is None else environ
    raw: dict[str, Any] = {}

    for name in declarations:
        env_key = f"{VAR_ENV_PREFIX}{name}"
        if env_key in environ:
            raw[name] = environ[env_key]

    for var_file in var_files or []:
        with open(var_file) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{var_file}: variable file must be a YAML mapping")
        raw.update(data)

    raw.update(cli_vars or {})

    unknown = set(raw) - set(declarations)
    if unknown:
        raise ConfigurationError(f"Values given for undeclared variables: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = {}
    for name, decl in declarations.items():
        if name in raw:
            values[name] = decl.coerce(raw[name])
        elif decl.required:
            raise ConfigurationError(f"No value for required variable '{name}'")
        else:
            values[name] = decl.default
    return values


def load_configuration(
    path: str | Path,
    cli_vars: dict[str, str] | None = None,
    var_files: list[str | Path] | None = None,
    environ: dict[str, str] | None = None,
) -> Configuration:
    """Load the root module at path and resolve its variables."""
    root = load_module(Path(path))
    variables = resolve_variables(root.variables, cli_vars, var_files, environ)
    return Configuration(root=root, variables=variables)
