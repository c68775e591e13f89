"""Tests for gridsens.parameters and gridsens.config."""

from __future__ import annotations

import pydantic
import pytest

from gridsens.config import Settings
from gridsens.parameters import (
    LoadFlowParameters,
    SecurityAnalysisParameters,
    SensitivityAnalysisParameters,
    SlackBusSelectionMode,
)


class TestLoadFlowParameters:
    def test_defaults(self):
        params = LoadFlowParameters()
        assert params.base_power == 100.0
        assert params.distributed_slack
        assert params.slack_bus_selection_mode == SlackBusSelectionMode.MOST_MESHED

    def test_frozen(self):
        params = LoadFlowParameters()
        with pytest.raises(pydantic.ValidationError):
            params.base_power = 50.0

    @pytest.mark.parametrize(
        "field, value",
        [("base_power", 0.0), ("max_newton_raphson_iterations", 0), ("dc_power_factor", 1.5)],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(pydantic.ValidationError):
            LoadFlowParameters(**{field: value})

    def test_copy_with_update(self):
        params = LoadFlowParameters().model_copy(update={"write_state": False})
        assert not params.write_state


class TestAnalysisParameters:
    def test_limit_reduction_bounds(self):
        with pytest.raises(pydantic.ValidationError):
            SecurityAnalysisParameters(limit_reduction=1.2)

    def test_negative_threshold(self):
        with pytest.raises(pydantic.ValidationError):
            SensitivityAnalysisParameters(threshold=-1.0)

    def test_nested_load_flow(self):
        params = SensitivityAnalysisParameters(load_flow={"base_power": 1000.0})
        assert params.load_flow.base_power == 1000.0


class TestSettings:
    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("GRIDSENS_BASE_POWER_MVA", "250")
        monkeypatch.setenv("GRIDSENS_MAX_WORKERS", "4")
        settings = Settings()
        assert settings.base_power_mva == 250.0
        assert settings.max_workers == 4
