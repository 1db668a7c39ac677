"""eventchain.core.config

Two config surfaces only:
1) `config/default.yaml` (+ optional `config/user.yaml` overlay)
2) Environment variables, `EVENTCHAIN_` prefix, `__` for nesting

Everything else is derived.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from eventchain.core.exceptions import ConfigError


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    return raw


class ServiceConfig(BaseModel):
    # Stamped into every envelope as serviceId.
    service_id: str = "user-service"

    @field_validator("service_id")
    @classmethod
    def service_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("service_id must not be blank")
        return v


class KafkaConfig(BaseModel):
    bootstrap_servers: str = "localhost:9092"
    topic: str = "user-events"
    acks: Literal["all", "1", "0"] = "all"
    compression: Literal["none", "gzip", "snappy", "lz4", "zstd"] = "none"
    poll_interval_s: float = 0.1
    extra: dict[str, Any] = Field(default_factory=dict)


class ChainConfig(BaseModel):
    publish_timeout_s: float = 10.0
    max_conflict_retries: int = 3
    outbox_enabled: bool = True

    @field_validator("publish_timeout_s")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("publish_timeout_s must be > 0")
        return v

    @field_validator("max_conflict_retries")
    @classmethod
    def retries_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_conflict_retries must be >= 0")
        return v


class SigningConfig(BaseModel):
    # Either a key file (see Ed25519Signer.save) or raw hex. Env is the usual carrier for hex.
    key_path: Path | None = None
    private_key_hex: str = ""
    # Generate a throwaway key when nothing is configured. Chains signed with it
    # cannot be verified after a restart.
    allow_ephemeral: bool = True


class StoreConfig(BaseModel):
    data_dir: Path = Path("data")
    db_name: str = "users.db"
    outbox_db_name: str = "outbox.db"

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @property
    def outbox_path(self) -> Path:
        return self.data_dir / self.outbox_db_name


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = False


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    signing: SigningConfig = Field(default_factory=SigningConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"env_prefix": "EVENTCHAIN_", "env_nested_delimiter": "__"}

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        raw = _read_yaml(path)

        user = path.parent / "user.yaml"
        if path.name != "user.yaml" and user.exists():
            raw = _deep_merge(raw, _read_yaml(user))

        try:
            return cls(**raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid config in {path}: {e}") from e

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml")
