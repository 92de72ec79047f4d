"""Test configuration models and loader."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

LogFormat = Literal["console", "plain", "json"]


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: LogFormat = "console"
    write_mock_request_matching_logs: bool = False


class RunnerSettings(BaseModel):
    max_workflow_execution_duration: float = Field(default=300, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)
    default_http_response_status_code: int = Field(default=200, ge=100, le=599)


class StorageEmulatorSettings(BaseModel):
    enable_port_check: bool = True
    host: str = "127.0.0.1"
    ports: list[int] = Field(default_factory=lambda: [10000, 10001, 10002])

    @field_validator("ports")
    @classmethod
    def _valid_ports(cls, ports: list[int]) -> list[int]:
        if not ports:
            raise ValueError("At least one storage emulator port is required")
        for port in ports:
            if port <= 0 or port > 65535:
                raise ValueError("Port must be between 1 and 65535")
        return ports


class MockHostSettings(BaseModel):
    """Serve the dispatcher over HTTP for runtimes that call out over the network."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(default=7075, ge=0, le=65535)


class EmulatorSettings(BaseModel):
    base_url: str = "http://127.0.0.1:7071"
    workflow_name: str = "workflow"
    trigger_name: str = "manual"
    request_timeout: float = Field(default=30.0, gt=0)
    command: Optional[list[str]] = None
    startup_timeout: float = Field(default=60.0, gt=0)


class TestConfiguration(BaseModel):
    """Settings shared by every test run in a suite."""

    __test__ = False

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    runner: RunnerSettings = Field(default_factory=RunnerSettings)
    storage: StorageEmulatorSettings = Field(default_factory=StorageEmulatorSettings)
    mock_host: MockHostSettings = Field(default_factory=MockHostSettings)
    emulator: EmulatorSettings = Field(default_factory=EmulatorSettings)


def load_config(path: Path | str | None) -> TestConfiguration:
    """Load a YAML or JSON configuration file; ``None`` yields the defaults."""

    if path is None:
        return TestConfiguration()
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    text = path.read_text(encoding="utf-8")
    data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    if data is None:
        return TestConfiguration()
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return TestConfiguration.model_validate(data)
