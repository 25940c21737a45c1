"""TOML-based kina configuration.

Loads ~/.config/kina/config.toml (global) and kina.toml (project), merges
them, and builds the frozen settings every component reads.

Example kina.toml:

    [cluster]
    default_name = "dev"
    cni = "cilium"
    wait_timeout = 600

    [kubernetes]
    kube_dir = "~/.kube"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, TypeAlias, TypeVar

import tomli_w

from kina.bootstrap.cni import CniPlugin
from kina.constants import (
    DEFAULT_CLUSTER_NAME,
    DEFAULT_CSR_TIMEOUT,
    DEFAULT_IMAGE,
    DEFAULT_KUBERNETES_VERSION,
    DEFAULT_POD_SUBNET,
    DEFAULT_SERVICE_SUBNET,
    DEFAULT_WAIT_TIMEOUT,
    GLOBAL_CONFIG_PATH,
    KUBE_DIR,
    PROJECT_CONFIG_NAME,
)
from kina.core.exceptions import ConfigurationError

RawConfig: TypeAlias = dict[str, Any]

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ClusterSettings:
    default_name: str = DEFAULT_CLUSTER_NAME
    default_image: str = DEFAULT_IMAGE
    wait_timeout: int = DEFAULT_WAIT_TIMEOUT
    retain_on_failure: bool = False
    cni: CniPlugin = CniPlugin.PTP
    skip_csr_approval: bool = False
    csr_timeout: int = DEFAULT_CSR_TIMEOUT


@dataclass(frozen=True, slots=True)
class ContainerSettings:
    cli_path: str | None = None


@dataclass(frozen=True, slots=True)
class KubernetesSettings:
    kubectl_path: str | None = None
    kube_dir: Path = KUBE_DIR
    version: str = DEFAULT_KUBERNETES_VERSION
    pod_subnet: str = DEFAULT_POD_SUBNET
    service_subnet: str = DEFAULT_SERVICE_SUBNET


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: str = "WARNING"
    file: str | None = None


@dataclass(frozen=True, slots=True)
class KinaConfig:
    cluster: ClusterSettings = field(default_factory=ClusterSettings)
    container: ContainerSettings = field(default_factory=ContainerSettings)
    kubernetes: KubernetesSettings = field(default_factory=KubernetesSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)
    return _deep_merge(global_cfg, project_cfg)


def _section(cls: type[T], name: str, raw: RawConfig) -> T:
    values = raw.get(name, {})
    if not isinstance(values, dict):
        raise ConfigurationError(f"[{name}] must be a table")

    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in [{name}]: {', '.join(unknown)}. Valid: {', '.join(sorted(known))}"
        )
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid [{name}] section: {e}") from e


def build_config(raw: RawConfig) -> KinaConfig:
    """Validate a merged raw mapping and turn it into a KinaConfig."""
    cluster = _section(ClusterSettings, "cluster", raw)
    try:
        cni = CniPlugin(str(cluster.cni).lower())
    except ValueError as e:
        valid = ", ".join(p.value for p in CniPlugin)
        raise ConfigurationError(f"Unknown CNI '{cluster.cni}'. Valid: {valid}") from e
    if cluster.wait_timeout < 0 or cluster.csr_timeout < 0:
        raise ConfigurationError("Timeouts must not be negative")

    kubernetes = _section(KubernetesSettings, "kubernetes", raw)
    kube_dir = Path(kubernetes.kube_dir).expanduser()

    logging = _section(LoggingSettings, "logging", raw)
    level = str(logging.level).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        raise ConfigurationError(f"Unknown log level '{logging.level}'")

    return KinaConfig(
        cluster=replace(cluster, cni=cni),
        container=_section(ContainerSettings, "container", raw),
        kubernetes=replace(kubernetes, kube_dir=kube_dir),
        logging=LoggingSettings(level=level, file=logging.file),
    )


def resolve_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> KinaConfig:
    return build_config(load_config(project_dir=project_dir, global_path=global_path))


def config_path(global_path: Path | None = None) -> Path:
    return global_path or GLOBAL_CONFIG_PATH


def settings_table(config: KinaConfig) -> RawConfig:
    """The config as TOML-ready tables. Unset optional values are left out."""
    tables: RawConfig = {}
    for section in fields(config):
        settings = getattr(config, section.name)
        table = {}
        for f in fields(settings):
            value = getattr(settings, f.name)
            if value is None:
                continue
            table[f.name] = str(value) if isinstance(value, (Path, CniPlugin)) else value
        tables[section.name] = table
    return tables


def _all_keys() -> dict[str, list[str]]:
    config = KinaConfig()
    return {s.name: [f.name for f in fields(getattr(config, s.name))] for s in fields(config)}


def _split_key(key: str) -> tuple[str, str]:
    section, _, name = key.partition(".")
    keys = _all_keys()
    if name not in keys.get(section, ()):
        valid = ", ".join(f"{s}.{k}" for s, names in keys.items() for k in names)
        raise ConfigurationError(f"Unknown config key '{key}'. Valid: {valid}")
    return section, name


def get_value(config: KinaConfig, key: str) -> Any:
    """Look up a dotted ``section.name`` key such as ``cluster.cni``."""
    section, name = _split_key(key)
    return getattr(getattr(config, section), name)


def _coerce(section: str, name: str, text: str) -> Any:
    default = getattr(getattr(KinaConfig(), section), name)
    if isinstance(default, bool):
        lowered = text.strip().lower()
        if lowered in ("true", "yes", "on", "1"):
            return True
        if lowered in ("false", "no", "off", "0"):
            return False
        raise ConfigurationError(f"'{section}.{name}' expects true or false, got '{text}'")
    if isinstance(default, int):
        try:
            return int(text)
        except ValueError as e:
            raise ConfigurationError(f"'{section}.{name}' expects a whole number, got '{text}'") from e
    return text


def _write_toml(path: Path, raw: RawConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as f:
        tomli_w.dump(raw, f)


def set_value(path: Path, key: str, value: str) -> KinaConfig:
    """Store ``key = value`` in the config file at ``path``.

    The value is parsed by the key's type and the whole file is validated
    before anything is written, so a bad value leaves the file untouched.
    """
    section, name = _split_key(key)
    raw = _deep_merge(_read_toml(path), {section: {name: _coerce(section, name, value)}})
    config = build_config(raw)
    _write_toml(path, raw)
    return config


def reset_config(path: Path) -> None:
    """Overwrite the config file at ``path`` with the defaults."""
    _write_toml(path, settings_table(KinaConfig()))
