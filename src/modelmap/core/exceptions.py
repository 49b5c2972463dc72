"""ModelMap 自定义异常类"""


class ModelMapError(Exception):
    """ModelMap 基础异常类"""

    pass


class ConfigurationError(ModelMapError):
    """配置错误

    致命错误，立即抛出，不重试（未知流水线、未定义模型等）。
    """

    pass


class UnknownModelError(ConfigurationError):
    """模型未定义错误"""

    def __init__(self, model_name: str):
        self.model_name = model_name
        super().__init__(f"Unknown model: {model_name}")


class UnknownPipelineError(ConfigurationError):
    """流水线未定义错误"""

    def __init__(self, pipeline_name: str, command_name: str | None = None):
        self.pipeline_name = pipeline_name
        self.command_name = command_name
        if command_name:
            message = f'Command "{command_name}" references unknown pipeline "{pipeline_name}"'
        else:
            message = f'Unknown pipeline "{pipeline_name}"'
        super().__init__(message)


class NoModelsDefinedError(ConfigurationError):
    """配置中没有定义任何模型"""

    def __init__(self):
        super().__init__("No models defined in configuration")


class StepResolutionError(ConfigurationError):
    """步骤模型解析失败

    步骤既没有直接模型引用，角色也无法在当前 provider 上下文中解析。
    """

    def __init__(self, step_name: str, role: str | None = None, provider_context: str | None = None):
        self.step_name = step_name
        self.role = role
        self.provider_context = provider_context
        super().__init__(f'Step "{step_name}" has no model and role could not be resolved')


class PipelineStepError(ModelMapError):
    """流水线步骤执行错误

    包装模型调用或工具执行中的异常，中止所属的流水线调用。
    """

    def __init__(self, step_name: str, cause: Exception):
        self.step_name = step_name
        self.cause = cause
        super().__init__(f'Step "{step_name}" failed: {cause}')


class FileSkippedError(ModelMapError):
    """文件被跳过（不存在、为空或过大）"""

    def __init__(self, file: str, reason: str):
        self.file = file
        self.reason = reason
        super().__init__(reason)
