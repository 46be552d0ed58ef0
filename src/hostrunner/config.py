from __future__ import annotations

import io
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Literal

from dotenv.parser import parse_stream

from hostrunner.errors import ConfigParseError, ConfigValueError
from hostrunner.logging import get_logger

logger = get_logger(__name__)

BackendName = Literal["claude", "codex"]
TRUTHY = {"1", "true", "yes", "on"}
PROCESS_ENVIRONMENT_LAYER = "process-environment"


@dataclass(frozen=True, slots=True)
class ConfigSource:
    name: str
    path: Path


@dataclass(frozen=True, slots=True)
class ConfigLayer:
    name: str
    values: Mapping[str, str]
    path: Path | None = None


class EffectiveConfig(Mapping[str, str]):
    """Merged, read-only view over ordered configuration layers."""

    def __init__(self, values: Mapping[str, str], origins: Mapping[str, str]) -> None:
        self._values = MappingProxyType(dict(values))
        self._origins = MappingProxyType(dict(origins))

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"EffectiveConfig(keys={sorted(self._values)})"

    def source_of(self, key: str) -> str | None:
        return self._origins.get(key)

    def flag(self, key: str) -> bool:
        return self.get(key, "").strip().lower() in TRUTHY

    def present(self, key: str) -> bool:
        return bool(self.get(key, "").strip())

    def require(self, key: str) -> str:
        if not self.present(key):
            raise ConfigValueError(key, self.get(key, ""), "a non-empty value")
        return self[key]


def _as_source(item: ConfigSource | Path | str) -> ConfigSource:
    if isinstance(item, ConfigSource):
        return item
    path = Path(item)
    return ConfigSource(name=str(path), path=path)


def load_layer(source: ConfigSource | Path | str) -> ConfigLayer | None:
    """Parse one env-style file; ``None`` when the file does not exist."""
    source = _as_source(source)
    if not source.path.is_file():
        logger.debug("config_source_missing", source=source.name, path=str(source.path))
        return None
    try:
        text = source.path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigParseError(source.name, reason=str(exc)) from exc

    values: dict[str, str] = {}
    for binding in parse_stream(io.StringIO(text)):
        if binding.error:
            raise ConfigParseError(source.name, line=binding.original.line)
        # bare "KEY" lines declare nothing
        if binding.key is None or binding.value is None:
            continue
        values[binding.key] = binding.value
    logger.debug("config_source_loaded", source=source.name, keys=len(values))
    return ConfigLayer(name=source.name, values=values, path=source.path)


def resolve_layers(layers: Iterable[ConfigLayer]) -> EffectiveConfig:
    values: dict[str, str] = {}
    origins: dict[str, str] = {}
    for layer in layers:
        for key, value in layer.values.items():
            values[key] = value
            origins[key] = layer.name
    return EffectiveConfig(values, origins)


def resolve(
    sources: Iterable[ConfigSource | Path | str | None],
    *,
    extra_layers: Iterable[ConfigLayer] = (),
) -> EffectiveConfig:
    """Merge sources lowest to highest precedence; later sources win.

    ``None`` entries and missing files are skipped. ``extra_layers`` are applied
    after the file sources (the CLI uses this for the process environment).
    """
    layers: list[ConfigLayer] = []
    for item in sources:
        if item is None:
            continue
        layer = load_layer(item)
        if layer is not None:
            layers.append(layer)
    layers.extend(extra_layers)
    return resolve_layers(layers)


def default_sources(root: Path, runner_dir: Path | None = None) -> list[ConfigSource]:
    runner_dir = runner_dir or root / "agentic" / "runner"
    return [
        ConfigSource(name="runner", path=runner_dir / ".env"),
        ConfigSource(name="base", path=root / ".env"),
        ConfigSource(name="local-secrets", path=root / ".env.local"),
    ]


def environment_layer(environ: Mapping[str, str]) -> ConfigLayer:
    return ConfigLayer(name=PROCESS_ENVIRONMENT_LAYER, values=dict(environ))


def _float(config: EffectiveConfig, key: str, default: float | None) -> float | None:
    raw = config.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigValueError(key, raw, "a number of seconds") from exc
    if value < 0:
        raise ConfigValueError(key, raw, "a non-negative number")
    return value if value > 0 else None


def _int(config: EffectiveConfig, key: str, default: int, minimum: int) -> int:
    raw = config.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigValueError(key, raw, "an integer") from exc
    if value < minimum:
        raise ConfigValueError(key, raw, f"an integer >= {minimum}")
    return value


def _backend(config: EffectiveConfig, key: str, default: BackendName) -> BackendName:
    raw = config.get(key, "").strip().lower() or default
    if raw not in ("claude", "codex"):
        raise ConfigValueError(key, raw, "'claude' or 'codex'")
    return raw  # type: ignore[return-value]


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    check_timeout_seconds: float = 5.0
    check_concurrency: int = 4
    check_attempts: int = 2
    operation_timeout_seconds: float | None = None
    backend: BackendName = "claude"
    fallback_backend: BackendName = "codex"
    backend_retries: int = 1
    backend_timeout_seconds: float = 900.0
    model: str = "sonnet"
    unattended_key: str = "TAILSCALE_AUTH_KEY"
    log_json: bool = False
    log_level: str = "WARNING"
    allowed_executables: frozenset[str] = field(
        default_factory=lambda: frozenset({"bash", "brew", "sudo", "tailscale", "true"})
    )

    @classmethod
    def from_config(cls, config: EffectiveConfig) -> RuntimeSettings:
        defaults = cls()
        extra_executables = {
            item.strip()
            for item in config.get("HOSTRUNNER_ALLOWED_EXECUTABLES", "").split(",")
            if item.strip()
        }
        return cls(
            check_timeout_seconds=_float(
                config, "HOSTRUNNER_CHECK_TIMEOUT", defaults.check_timeout_seconds
            )
            or defaults.check_timeout_seconds,
            check_concurrency=_int(
                config, "HOSTRUNNER_CHECK_CONCURRENCY", defaults.check_concurrency, 1
            ),
            check_attempts=_int(config, "HOSTRUNNER_CHECK_ATTEMPTS", defaults.check_attempts, 1),
            operation_timeout_seconds=_float(config, "HOSTRUNNER_OPERATION_TIMEOUT", None),
            backend=_backend(config, "HOSTRUNNER_BACKEND", defaults.backend),
            fallback_backend=_backend(
                config, "HOSTRUNNER_FALLBACK_BACKEND", defaults.fallback_backend
            ),
            backend_retries=_int(config, "HOSTRUNNER_BACKEND_RETRIES", defaults.backend_retries, 0),
            backend_timeout_seconds=_float(
                config, "HOSTRUNNER_BACKEND_TIMEOUT", defaults.backend_timeout_seconds
            )
            or defaults.backend_timeout_seconds,
            model=config.get("HOSTRUNNER_MODEL", "").strip() or defaults.model,
            unattended_key=config.get("HOSTRUNNER_UNATTENDED_KEY", "").strip()
            or defaults.unattended_key,
            log_json=config.get("HOSTRUNNER_LOG_FORMAT", "").strip().lower() == "json",
            log_level=config.get("HOSTRUNNER_LOG_LEVEL", "").strip() or defaults.log_level,
            allowed_executables=defaults.allowed_executables | extra_executables,
        )
