from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, ClassVar

import structlog
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_INTERVAL_S = 300.0
DEFAULT_TIMEOUT_S = 60.0
DEFAULT_QUERIES_FILE = "queries.yml"
DEFAULT_PORT = 8080

QUERY_FILE_SUFFIXES = (".yml", ".yaml")

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_METRIC_NAME_FRAGMENT = re.compile(r"^[a-zA-Z0-9_:]*$")
_ENV_REFERENCE = re.compile(r"\$\{([^}]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

logger = structlog.get_logger(__name__)


def base_name(query_name: str, suffix: str = "") -> str:
    """Series family name before the exporter prefix, e.g. ``orders_open``."""
    return f"{query_name}_{suffix}" if suffix else query_name


def parse_duration(value: Any) -> float:
    """Convert ``500ms``, ``30s``, ``5m``, ``1h30m`` or a plain number into seconds."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Empty duration")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ValueError(f"Unrecognized duration format: {value!r}") from None
    else:
        raise ValueError(f"Invalid duration: {value!r}")

    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds


def _scalar_to_str(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Expected a number, got {value!r}")
    if isinstance(value, int | float):
        return str(value)
    raise ValueError(f"Expected a number, got {value!r}")


def _check_value_on_error(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    try:
        float(value)
    except ValueError:
        raise ValueError(f"value-on-error must be numeric, got {value!r}") from None
    return value


class DefaultsCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid", "populate_by_name": True}

    data_source: str = Field(default="", alias="data-source")
    query_interval: float = Field(default=DEFAULT_INTERVAL_S, alias="query-interval")
    query_timeout: float = Field(default=DEFAULT_TIMEOUT_S, alias="query-timeout")
    query_value_on_error: str | None = Field(default=None, alias="query-value-on-error")

    @field_validator("query_interval", "query_timeout", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("query_value_on_error", mode="before")
    @classmethod
    def _parse_value_on_error(cls, value: Any) -> str | None:
        return _check_value_on_error(_scalar_to_str(value))

    @model_validator(mode="after")
    def _apply_fallbacks(self) -> DefaultsCfg:
        # A zero duration in the config file means "use the built-in default".
        if self.query_interval == 0:
            self.query_interval = DEFAULT_INTERVAL_S
        if self.query_timeout == 0:
            self.query_timeout = DEFAULT_TIMEOUT_S
        return self


class DataSourceCfg(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid"}

    driver: str = ""
    properties: dict[str, Any] = Field(default_factory=dict)


class Config(BaseModel):
    model_config: ClassVar[dict[str, Any]] = {"extra": "forbid", "populate_by_name": True}

    defaults: DefaultsCfg = Field(default_factory=DefaultsCfg)
    data_sources: dict[str, DataSourceCfg] = Field(default_factory=dict, alias="data-sources")

    @field_validator("defaults", "data_sources", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @model_validator(mode="after")
    def _check_data_sources(self) -> Config:
        for name, source in self.data_sources.items():
            if not source.driver:
                raise ValueError(f"Driver is not defined for data source [{name}]")
            if not source.properties:
                raise ValueError(f"Properties are not defined for data source [{name}]")
        return self


class Query(BaseModel):
    """A SQL statement plus the settings that control how it is polled and exported."""

    model_config: ClassVar[dict[str, Any]] = {
        "extra": "forbid",
        "frozen": True,
        "populate_by_name": True,
    }

    name: str
    data_source: str = Field(default="", alias="data-source")
    driver: str = ""
    connection: dict[str, Any] = Field(default_factory=dict)
    sql: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    interval: float = DEFAULT_INTERVAL_S
    timeout: float = DEFAULT_TIMEOUT_S
    data_field: str = Field(default="", alias="data-field")
    sub_metrics: dict[str, str] = Field(default_factory=dict, alias="sub-metrics")
    value_on_error: str | None = Field(default=None, alias="value-on-error")

    @field_validator("connection", "params", "sub_metrics", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("interval", "timeout", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("data_field", mode="before")
    @classmethod
    def _lower_data_field(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value.lower() if isinstance(value, str) else value

    @field_validator("sub_metrics", mode="after")
    @classmethod
    def _lower_sub_metric_columns(cls, value: dict[str, str]) -> dict[str, str]:
        return {suffix: column.lower() for suffix, column in value.items()}

    @field_validator("value_on_error", mode="before")
    @classmethod
    def _parse_value_on_error(cls, value: Any) -> str | None:
        return _check_value_on_error(_scalar_to_str(value))

    @model_validator(mode="after")
    def _validate(self) -> Query:
        if not self.name:
            raise ValueError("Query is not named")
        if not _METRIC_NAME_FRAGMENT.match(self.name):
            raise ValueError(
                f"Query name [{self.name}] may only contain letters, digits, '_' and ':'"
            )
        if not self.driver:
            raise ValueError(f"No data source or driver is specified for query [{self.name}]")
        if not self.sql:
            raise ValueError(f"SQL statement required for query [{self.name}]")
        if self.timeout <= 0:
            raise ValueError(f"Timeout must be greater than zero for query [{self.name}]")
        if self.interval <= 0:
            raise ValueError(f"Interval must be greater than zero for query [{self.name}]")
        if self.data_field and self.sub_metrics:
            raise ValueError(
                f"sub-metrics are not compatible with data-field for query [{self.name}]"
            )
        for suffix in self.sub_metrics:
            if not suffix or not _METRIC_NAME_FRAGMENT.match(suffix):
                raise ValueError(f"Invalid sub-metric suffix [{suffix}] for query [{self.name}]")
        return self

    def effective_sub_metrics(self) -> dict[str, str]:
        """Sub-metric map in use: ``sub_metrics`` or a single unsuffixed ``data_field``."""
        if self.sub_metrics:
            return dict(self.sub_metrics)
        return {"": self.data_field}

    def family_names(self) -> list[str]:
        """Metric family names this query exports, without the exporter prefix."""
        return [base_name(self.name, suffix) for suffix in self.effective_sub_metrics()]


def expand_env(text: str) -> str:
    """Expand ``$VAR`` and ``${VAR}``; unset variables become empty strings."""

    def _lookup(match: re.Match[str]) -> str:
        name = match.group(1) if match.group(1) is not None else match.group(2)
        return os.environ.get(name, "")

    return _ENV_REFERENCE.sub(_lookup, text)


def load_config(path: str | Path) -> Config:
    """Load data sources and query defaults from a YAML config file."""

    file_path = Path(path)
    logger.info("config_loading", path=str(file_path))
    if not file_path.exists():
        msg = f"Missing config file: {file_path}"
        raise FileNotFoundError(msg)

    text = expand_env(file_path.read_text(encoding="utf-8"))
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"Error decoding config file {file_path}: {exc}") from exc
    return Config.model_validate(data or {})


def _query_fields(name: str, raw: Mapping[str, Any], config: Config) -> dict[str, Any]:
    fields = dict(raw)
    fields["name"] = name
    defaults = config.defaults

    if not fields.get("data-source"):
        fields["data-source"] = defaults.data_source
    if not fields.get("driver"):
        source = config.data_sources.get(fields["data-source"])
        if source is not None:
            fields["driver"] = source.driver
            fields["connection"] = source.properties
    if not fields.get("interval"):
        fields["interval"] = defaults.query_interval
    if not fields.get("timeout"):
        fields["timeout"] = defaults.query_timeout
    if fields.get("value-on-error") in (None, "") and defaults.query_value_on_error:
        fields["value-on-error"] = defaults.query_value_on_error
    return fields


def decode_queries(text: str, config: Config, source: str = "<string>") -> list[Query]:
    """Decode a YAML list of ``- name: {...}`` query definitions."""

    try:
        parsed = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"Error decoding queries from {source}: {exc}") from exc
    if parsed is None:
        return []
    if not isinstance(parsed, list):
        raise ValueError(f"Queries in {source} must be a list of named queries")

    queries: list[Query] = []
    for item in parsed:
        if not isinstance(item, dict):
            raise ValueError(f"Invalid query entry in {source}: {item!r}")
        for name, raw in item.items():
            if raw is None:
                raw = {}
            if not isinstance(raw, dict):
                raise ValueError(f"Query [{name}] in {source} must be a mapping")
            queries.append(Query.model_validate(_query_fields(str(name), raw, config)))
    return queries


def ensure_unique_names(queries: Iterable[Query]) -> None:
    """Reject duplicate query names and queries exporting the same metric family."""
    names: set[str] = set()
    families: dict[str, str] = {}
    for query in queries:
        if query.name in names:
            raise ValueError(f"Query [{query.name}] is defined more than once")
        names.add(query.name)
        for family in query.family_names():
            owner = families.setdefault(family, query.name)
            if owner != query.name:
                raise ValueError(
                    f"Queries [{owner}] and [{query.name}] both export metric [{family}]"
                )


def load_queries(path: str | Path, config: Config) -> list[Query]:
    """Load queries from a single YAML file."""

    file_path = Path(path)
    logger.info("queries_loading", path=str(file_path))
    if not file_path.exists():
        msg = f"Missing queries file: {file_path}"
        raise FileNotFoundError(msg)

    queries = decode_queries(file_path.read_text(encoding="utf-8"), config, str(file_path))
    ensure_unique_names(queries)
    return queries


def load_queries_dir(
    path: str | Path, config: Config, *, tolerate_invalid: bool = False
) -> list[Query]:
    """Load queries from every YAML file in ``path``.

    With ``tolerate_invalid`` files that fail to decode or validate are
    logged and skipped instead of aborting the load.
    """

    dir_path = Path(path)
    logger.info("queries_dir_loading", path=str(dir_path))
    if not dir_path.is_dir():
        msg = f"Missing queries directory: {dir_path}"
        raise FileNotFoundError(msg)

    queries: list[Query] = []
    for file_path in sorted(dir_path.iterdir()):
        if file_path.suffix not in QUERY_FILE_SUFFIXES or not file_path.is_file():
            continue
        logger.info("queries_loading", path=str(file_path))
        try:
            loaded = decode_queries(
                file_path.read_text(encoding="utf-8"), config, str(file_path)
            )
        except ValueError as exc:
            if not tolerate_invalid:
                raise
            logger.warning("queries_file_ignored", path=str(file_path), error=str(exc))
            continue
        queries.extend(loaded)

    ensure_unique_names(queries)
    return queries
