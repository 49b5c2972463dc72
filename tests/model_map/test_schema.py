"""测试模型映射配置解析"""

import pytest

from modelmap.core.exceptions import ConfigurationError
from modelmap.model_map.schema import (
    PipelineStep,
    find_model_map,
    load_model_map,
    parse_model_map,
)

YAML_CONFIG = """
version: 1
models:
  haiku:
    provider: anthropic
    model: claude-haiku
    maxTokens: 1024
model-roles:
  fast:
    anthropic: haiku
tasks:
commands:
  commit:
    task: fast
pipelines:
  quick:
    steps:
      - name: scan
        role: fast
        prompt: "Scan {input}"
        output: scan
        allowToolUse: true
        tools: [read_file]
        maxIterations: 3
"""


class TestParseModelMap:
    """parse_model_map 测试"""

    def test_aliases(self, model_map) -> None:
        """测试 model-roles 别名与版本字符串化"""
        assert model_map.version == "1"
        assert model_map.model_roles["fast"]["anthropic"] == "claude-fast"
        assert model_map.pipelines["review"].provider == "openai"

    def test_empty_data(self) -> None:
        """测试空配置"""
        config = parse_model_map(None)
        assert config.models == {}
        assert config.pipelines == {}

    def test_non_mapping_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            parse_model_map(["not", "a", "mapping"])

    def test_pipeline_requires_steps(self) -> None:
        """测试流水线至少需要一个步骤"""
        with pytest.raises(ConfigurationError, match="Invalid model map"):
            parse_model_map({"pipelines": {"empty": {"steps": []}}})

    def test_step_defaults(self) -> None:
        step = PipelineStep(name="a", prompt="p", output="o")
        assert step.allow_tool_use is False
        assert step.tools == []
        assert step.max_iterations is None
        assert step.condition is None


class TestLoadModelMap:
    """load_model_map 测试"""

    def test_load_yaml(self, tmp_path) -> None:
        """测试 YAML 加载（camelCase 别名、空段落）"""
        path = tmp_path / "modelmap.yaml"
        path.write_text(YAML_CONFIG, encoding="utf-8")

        config = load_model_map(path)
        assert config.models["haiku"].max_tokens == 1024
        assert config.tasks == {}
        assert config.commands["commit"].task == "fast"

        step = config.pipelines["quick"].steps[0]
        assert step.allow_tool_use is True
        assert step.tools == ["read_file"]
        assert step.max_iterations == 3

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_model_map(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path) -> None:
        path = tmp_path / "modelmap.yaml"
        path.write_text("models: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            load_model_map(path)

    def test_find_model_map(self, tmp_path) -> None:
        assert find_model_map(tmp_path) is None
        (tmp_path / "modelmap.yml").write_text("version: 1\n", encoding="utf-8")
        assert find_model_map(tmp_path) == tmp_path / "modelmap.yml"
