"""日志配置

基于 loguru，统一 CLI 与库调用时的日志输出格式。
"""

import sys

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(level: str = "INFO", verbose: bool = False) -> int:
    """重新配置 stderr 日志输出

    Args:
        level: 日志级别
        verbose: 是否输出 DEBUG 日志（覆盖 level）

    Returns:
        新添加的 handler ID
    """
    logger.remove()
    return logger.add(
        sys.stderr,
        level="DEBUG" if verbose else level.upper(),
        format=LOG_FORMAT,
    )
