from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from workflow_runner.config import TestConfiguration, load_config
from workflow_runner.output_config import ENV_VAR_NAME, OutputFormat, get_output_format


def test_defaults() -> None:
    config = load_config(None)

    assert config.runner.max_workflow_execution_duration == 300
    assert config.runner.default_http_response_status_code == 200
    assert config.storage.enable_port_check is True
    assert config.storage.host == "127.0.0.1"
    assert config.storage.ports == [10000, 10001, 10002]
    assert config.mock_host.enabled is False


def test_load_yaml(tmp_path: Path) -> None:
    target = tmp_path / "testConfiguration.yaml"
    target.write_text(
        yaml.safe_dump(
            {
                "logging": {"write_mock_request_matching_logs": True},
                "runner": {"max_workflow_execution_duration": 60, "default_http_response_status_code": 404},
                "storage": {"enable_port_check": False},
            }
        ),
        encoding="utf-8",
    )

    config = load_config(target)

    assert config.logging.write_mock_request_matching_logs is True
    assert config.runner.max_workflow_execution_duration == 60
    assert config.runner.default_http_response_status_code == 404
    assert config.storage.enable_port_check is False


def test_load_json(tmp_path: Path) -> None:
    target = tmp_path / "testConfiguration.json"
    target.write_text(json.dumps({"emulator": {"workflow_name": "stateful-workflow"}}), encoding="utf-8")

    assert load_config(target).emulator.workflow_name == "stateful-workflow"


def test_invalid_files(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")

    not_mapping = tmp_path / "list.yaml"
    not_mapping.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(not_mapping)

    with pytest.raises(ValidationError):
        TestConfiguration.model_validate({"storage": {"ports": [70000]}})


def test_output_format_priority(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_VAR_NAME, raising=False)
    assert get_output_format(None) is OutputFormat.AUTO

    monkeypatch.setenv(ENV_VAR_NAME, "plain")
    assert get_output_format(None) is OutputFormat.PLAIN
    assert get_output_format("json") is OutputFormat.JSON
    assert get_output_format("bogus") is OutputFormat.PLAIN
