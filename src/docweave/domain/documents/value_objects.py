"""Value objects describing the update configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import DocweaveError

DEFAULT_VERSION = 1
DEFAULT_REGISTRY = ".docweave/registry.json"
DEFAULT_STATE_DIR = ".docweave/state"
DEFAULT_REPORT_DIR = "reports/docweave"
DEFAULT_TEMPLATE_ROOT = ".docweave/templates"
DEFAULT_AGE_THRESHOLD_DAYS = 30
DEFAULT_WORKERS = 4
CONTENT_SOURCE_TYPES = {"file", "http"}
CHANGE_IMPACT_TYPES = {"rules"}


class UpdateConfigError(DocweaveError):
    """Raised when the update configuration is invalid."""

    default_code = "UPDATE_CONFIG_INVALID"


@dataclass(frozen=True)
class QueueConfig:
    concurrency: int = 1
    min_delay_seconds: float = 1.0
    max_backoff: float = 10.0
    timeout_seconds: Optional[float] = 60.0
    max_retries: int = 3

    @classmethod
    def from_dict(cls, data: object, *, config_path: Path) -> "QueueConfig":
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise UpdateConfigError(f"'request_queue' in {config_path} must be a mapping")
        concurrency = _int(data.get("concurrency", 1), "request_queue.concurrency", minimum=1)
        min_delay = _float(data.get("min_delay_seconds", 1.0), "request_queue.min_delay_seconds", minimum=0.0)
        max_backoff = _float(data.get("max_backoff", 10.0), "request_queue.max_backoff", minimum=1.0)
        max_retries = _int(data.get("max_retries", 3), "request_queue.max_retries", minimum=0)
        timeout = data.get("timeout_seconds", 60.0)
        if timeout is not None:
            timeout = _float(timeout, "request_queue.timeout_seconds", minimum=0.0) or None
        return cls(
            concurrency=concurrency,
            min_delay_seconds=min_delay,
            max_backoff=max_backoff,
            timeout_seconds=timeout,
            max_retries=max_retries,
        )


@dataclass(frozen=True)
class AdapterConfig:
    """Adapter selection: a type name plus free-form options."""

    type: str
    options: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: object, *, key: str, allowed: set, default: "AdapterConfig") -> "AdapterConfig":
        if data is None:
            return default
        if isinstance(data, str):
            data = {"type": data}
        if not isinstance(data, Mapping):
            raise UpdateConfigError(f"'{key}' must be a mapping with 'type' and 'options'")
        adapter_type = data.get("type")
        if not isinstance(adapter_type, str) or adapter_type not in allowed:
            raise UpdateConfigError(f"'{key}.type' must be one of {sorted(allowed)}, got {adapter_type!r}")
        options = data.get("options") or {}
        if not isinstance(options, Mapping):
            raise UpdateConfigError(f"'{key}.options' must be a mapping")
        return cls(type=adapter_type, options=dict(options))

    def as_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "options": dict(self.options)}


@dataclass(frozen=True)
class DocumentSpec:
    """One tracked document and what it is generated from."""

    path: str
    doc_type: str
    dependencies: Tuple[str, ...] = ()
    impact_areas: Tuple[str, ...] = ()
    context: Mapping[str, Any] = field(default_factory=dict)
    fallback_template: Optional[str] = None

    def resolve_path(self, project_root: Path) -> Path:
        path = Path(self.path)
        return path if path.is_absolute() else project_root / path

    @classmethod
    def from_dict(cls, data: object, *, index: int) -> "DocumentSpec":
        if isinstance(data, str):
            data = {"path": data}
        if not isinstance(data, Mapping):
            raise UpdateConfigError(f"documents[{index}] must be a mapping or a path string")
        path = data.get("path")
        if not isinstance(path, str) or not path.strip():
            raise UpdateConfigError(f"documents[{index}].path must be a non-empty string")
        doc_type = data.get("doc_type") or Path(path).stem.lower()
        context = data.get("context") or {}
        if not isinstance(context, Mapping):
            raise UpdateConfigError(f"documents[{index}].context must be a mapping")
        fallback = data.get("fallback_template")
        if fallback is not None and not isinstance(fallback, str):
            raise UpdateConfigError(f"documents[{index}].fallback_template must be a string")
        return cls(
            path=Path(path.strip()).as_posix(),
            doc_type=str(doc_type),
            dependencies=_strings(data.get("dependencies"), f"documents[{index}].dependencies"),
            impact_areas=_strings(data.get("impact_areas"), f"documents[{index}].impact_areas"),
            context=dict(context),
            fallback_template=fallback,
        )


@dataclass(frozen=True)
class UpdateConfig:
    version: int = DEFAULT_VERSION
    registry: str = DEFAULT_REGISTRY
    state_dir: str = DEFAULT_STATE_DIR
    report_dir: str = DEFAULT_REPORT_DIR
    age_threshold_days: Optional[float] = DEFAULT_AGE_THRESHOLD_DAYS
    workers: int = DEFAULT_WORKERS
    request_queue: QueueConfig = field(default_factory=QueueConfig)
    content_source: AdapterConfig = field(
        default_factory=lambda: AdapterConfig("file", {"root": DEFAULT_TEMPLATE_ROOT})
    )
    change_impact: AdapterConfig = field(default_factory=lambda: AdapterConfig("rules", {}))
    documents: Tuple[DocumentSpec, ...] = ()

    @property
    def age_threshold(self) -> Optional[timedelta]:
        if self.age_threshold_days is None:
            return None
        return timedelta(days=self.age_threshold_days)

    def document(self, path: str) -> Optional[DocumentSpec]:
        wanted = Path(path).as_posix()
        for spec in self.documents:
            if spec.path == wanted:
                return spec
        return None

    def registry_path(self, project_root: Path) -> Path:
        return _resolve(project_root, self.registry)

    def state_path(self, project_root: Path) -> Path:
        return _resolve(project_root, self.state_dir)

    def report_path(self, project_root: Path) -> Path:
        return _resolve(project_root, self.report_dir)

    @classmethod
    def default(cls) -> "UpdateConfig":
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, config_path: Path) -> "UpdateConfig":
        """Build config from a raw mapping, validating invariants."""

        if not isinstance(data, Mapping):
            raise UpdateConfigError(f"Configuration in {config_path} must be a mapping")
        version = _int(data.get("version", DEFAULT_VERSION), "version", minimum=1)
        if version != DEFAULT_VERSION:
            raise UpdateConfigError(f"Unsupported docweave config version {version} in {config_path}")

        age = data.get("age_threshold_days", DEFAULT_AGE_THRESHOLD_DAYS)
        if age is not None:
            age = _float(age, "age_threshold_days", minimum=0.0)

        raw_documents = data.get("documents") or []
        if not isinstance(raw_documents, list):
            raise UpdateConfigError("'documents' must be a list")
        documents: List[DocumentSpec] = []
        seen = set()
        for index, entry in enumerate(raw_documents):
            spec = DocumentSpec.from_dict(entry, index=index)
            if spec.path in seen:
                raise UpdateConfigError(f"document '{spec.path}' is listed twice in {config_path}")
            seen.add(spec.path)
            documents.append(spec)

        defaults = cls()
        return cls(
            version=version,
            registry=_path_string(data.get("registry", DEFAULT_REGISTRY), "registry"),
            state_dir=_path_string(data.get("state_dir", DEFAULT_STATE_DIR), "state_dir"),
            report_dir=_path_string(data.get("report_dir", DEFAULT_REPORT_DIR), "report_dir"),
            age_threshold_days=age,
            workers=_int(data.get("workers", DEFAULT_WORKERS), "workers", minimum=1),
            request_queue=QueueConfig.from_dict(data.get("request_queue"), config_path=config_path),
            content_source=AdapterConfig.from_dict(
                data.get("content_source"),
                key="content_source",
                allowed=CONTENT_SOURCE_TYPES,
                default=defaults.content_source,
            ),
            change_impact=AdapterConfig.from_dict(
                data.get("change_impact"),
                key="change_impact",
                allowed=CHANGE_IMPACT_TYPES,
                default=defaults.change_impact,
            ),
            documents=tuple(documents),
        )


def _resolve(project_root: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else project_root / path


def _path_string(value: object, key: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise UpdateConfigError(f"'{key}' must be a non-empty path string")
    return value.strip()


def _strings(value: object, key: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(item, str) and item.strip() for item in value):
        raise UpdateConfigError(f"'{key}' must be a list of non-empty strings")
    return tuple(dict.fromkeys(item.strip() for item in value))


def _int(value: object, key: str, *, minimum: int) -> int:
    if isinstance(value, bool):
        raise UpdateConfigError(f"'{key}' must be an integer")
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise UpdateConfigError(f"'{key}' must be an integer") from exc
    if number < minimum:
        raise UpdateConfigError(f"'{key}' must be >= {minimum}")
    return number


def _float(value: object, key: str, *, minimum: float) -> float:
    if isinstance(value, bool):
        raise UpdateConfigError(f"'{key}' must be a number")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise UpdateConfigError(f"'{key}' must be a number") from exc
    if number < minimum:
        raise UpdateConfigError(f"'{key}' must be >= {minimum}")
    return number


__all__ = [
    "AdapterConfig",
    "DocumentSpec",
    "QueueConfig",
    "UpdateConfig",
    "UpdateConfigError",
]
