"""流水线上下文

变量替换与条件判断均为纯函数。
"""

import re
from dataclasses import dataclass, field

VARIABLE_PATTERN = re.compile(r"\{(\w+)\}")


@dataclass
class PipelineContext:
    """流水线执行上下文

    生命周期为一次 execute 调用；variables 以 input 为种子，
    每个步骤完成后追加其输出变量。
    """

    input: str
    """原始输入"""
    variables: dict[str, str] = field(default_factory=dict)
    """累积的变量"""

    def __post_init__(self):
        self.variables.setdefault("input", self.input)

    def set(self, name: str, value: str) -> None:
        self.variables[name] = value


def substitute_variables(template: str, variables: dict[str, str]) -> str:
    """替换模板中的 {var} 占位符

    未绑定的占位符原样保留。

    Args:
        template: 模板字符串
        variables: 变量表

    Returns:
        替换后的字符串
    """

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return variables[name]
        return match.group(0)

    return VARIABLE_PATTERN.sub(replace, template)


def evaluate_condition(condition: str, variables: dict[str, str]) -> bool:
    """判断步骤条件

    "x" 为真当且仅当 variables["x"] 去除首尾空白后非空；"!x" 取反。
    缺失变量视为空。
    """
    negated = condition.startswith("!")
    name = condition[1:] if negated else condition
    value = variables.get(name)
    result = bool(value and value.strip())
    return not result if negated else result
