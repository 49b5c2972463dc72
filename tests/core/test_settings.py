"""测试运行时配置"""

import pytest
from pydantic import ValidationError

from modelmap.core.config import ModelMapSettings


class TestModelMapSettings:
    """ModelMapSettings 测试"""

    def test_defaults(self) -> None:
        settings = ModelMapSettings(_env_file=None)
        assert settings.concurrency == 4
        assert settings.critical_concurrency == 2
        assert settings.batch_size == 15

    def test_env_override(self, monkeypatch) -> None:
        monkeypatch.setenv("MODELMAP_CRITICAL_CONCURRENCY", "1")
        monkeypatch.setenv("MODELMAP_CONCURRENCY", "8")

        settings = ModelMapSettings(_env_file=None)

        assert settings.critical_concurrency == 1
        assert settings.concurrency == 8

    @pytest.mark.parametrize("value", ["0", "3"])
    def test_critical_concurrency_bounds(self, monkeypatch, value) -> None:
        monkeypatch.setenv("MODELMAP_CRITICAL_CONCURRENCY", value)
        with pytest.raises(ValidationError):
            ModelMapSettings(_env_file=None)
