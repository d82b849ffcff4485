from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class RelayConfig(BaseModel):
    """Relay settings, normally read from a YAML file."""

    model_config = ConfigDict(extra="ignore")

    listen: str = "0.0.0.0:8080"
    db_path: Optional[str] = None
    max_message_bytes: int = Field(default=65536, gt=0)
    ping_interval: Optional[float] = Field(default=20.0, gt=0)
    ping_timeout: Optional[float] = Field(default=20.0, gt=0)
    log_level: str = "INFO"

    @field_validator("listen")
    @classmethod
    def _host_port(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError("listen must look like host:port")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()

    @property
    def host_port(self) -> Tuple[str, int]:
        host, _, port = self.listen.rpartition(":")
        return host, int(port)


def load_config(path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None) -> RelayConfig:
    data: Dict[str, Any] = {}
    if path is not None:
        data = yaml.safe_load(path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    return RelayConfig.model_validate(data)
