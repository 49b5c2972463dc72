"""文件读取与输入格式化"""

from pathlib import Path

from modelmap.core.exceptions import FileSkippedError


def resolve_path(file: str, project_root: str | Path | None = None) -> Path:
    path = Path(file)
    if path.is_absolute() or project_root is None:
        return path
    return Path(project_root) / path


def read_file_content(
    file: str,
    max_size: int,
    project_root: str | Path | None = None,
) -> str:
    """读取待处理文件

    Raises:
        FileSkippedError: 文件不存在、为空或超过大小上限
    """
    path = resolve_path(file, project_root)
    try:
        size = path.stat().st_size
    except OSError:
        raise FileSkippedError(file, "File not found or empty")

    if size > max_size:
        raise FileSkippedError(file, f"File too large ({size} bytes > {max_size} bytes)")

    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise FileSkippedError(file, f"File could not be read: {e}") from e

    if not content.strip():
        raise FileSkippedError(file, "File not found or empty")
    return content


def format_file_input(file: str, content: str) -> str:
    """格式化为流水线输入：文件名 + 带语言标记的代码块"""
    ext = Path(file).suffix[1:] or "txt"
    return f"### File: {file}\n```{ext}\n{content}\n```"
