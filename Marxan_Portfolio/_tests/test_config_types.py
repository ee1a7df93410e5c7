"""
Unit tests for typed configuration.

Tests:
1. AppConfig.from_dict() accepts partial dictionaries
2. __post_init__ validation rejects out-of-range values
3. normalize_config() accepts dict, AppConfig and None
4. Environment variable helpers

Run with: python -m pytest Marxan_Portfolio/_tests/test_config_types.py -v
"""

import pytest


class TestAppConfig:
    """Master facade construction."""

    def test_partial_dict_uses_defaults(self):
        from Marxan_Portfolio.config_types import AppConfig

        app_config = AppConfig.from_dict({"solver": {"max_attempts": 5}})
        assert app_config.solver.max_attempts == 5
        assert app_config.solver.max_failure_fraction == 0.5
        assert app_config.analytics.linkage == "average"
        assert app_config.fingerprint.hash_length == 16
        assert app_config.get_raw("solver") == {"max_attempts": 5}

    def test_full_config_loads(self):
        from Marxan_Portfolio.config import CONFIG
        from Marxan_Portfolio.config_types import AppConfig

        app_config = AppConfig.from_dict(CONFIG)
        assert app_config.score.cost_weight == 1.0
        assert app_config.parallel.backend == "threading"
        assert app_config.problem_defaults.replicates == 10

    def test_normalize_config(self):
        from Marxan_Portfolio.config_types import AppConfig, normalize_config

        app_config = AppConfig.from_dict({})
        assert normalize_config(app_config) is app_config
        assert isinstance(normalize_config(None), AppConfig)
        assert normalize_config({"cache": {"max_entries": 3}}).cache.max_entries == 3

    def test_logging_paths(self, tmp_path):
        from Marxan_Portfolio.config_types import AppConfig

        app_config = AppConfig.from_dict({"logging": {"log_dir": str(tmp_path)}, "cache": {"cache_dir": None}})
        assert app_config.logging.log_path == tmp_path
        assert app_config.cache.cache_path is None


class TestValidation:
    """Out-of-range settings fail at construction."""

    @pytest.mark.parametrize(
        "section,values",
        [
            ("solver", {"max_attempts": 0}),
            ("solver", {"max_failure_fraction": 1.5}),
            ("solver", {"timeout_s": 0}),
            ("cache", {"max_entries": 0}),
            ("parallel", {"backend": "loky"}),
            ("parallel", {"max_workers": 0}),
            ("score", {"boundary_weight": -1.0}),
            ("analytics", {"linkage": "centroid"}),
            ("analytics", {"distance_subject": "cost"}),
            ("fingerprint", {"hash_length": 4}),
        ],
    )
    def test_rejected(self, section, values):
        from Marxan_Portfolio.config_types import AppConfig

        with pytest.raises(ValueError):
            AppConfig.from_dict({section: values})


class TestEnvironmentHelpers:
    """MXP_* environment overrides."""

    def test_env_or_default(self, monkeypatch):
        from Marxan_Portfolio.config import _env_or_default

        monkeypatch.delenv("MXP_TEST_VALUE", raising=False)
        assert _env_or_default("MXP_TEST_VALUE", 3, int) == 3
        monkeypatch.setenv("MXP_TEST_VALUE", "7")
        assert _env_or_default("MXP_TEST_VALUE", 3, int) == 7
        assert _env_or_default("MXP_TEST_VALUE", "x") == "7"

    @pytest.mark.parametrize("raw,expected", [("true", True), ("1", True), ("YES", True), ("no", False)])
    def test_env_bool(self, monkeypatch, raw, expected):
        from Marxan_Portfolio.config import _env_bool

        monkeypatch.setenv("MXP_TEST_FLAG", raw)
        assert _env_bool("MXP_TEST_FLAG", False) is expected
