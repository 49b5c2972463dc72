"""测试文件读取与输入格式化"""

from pathlib import Path

import pytest

from modelmap.core.exceptions import FileSkippedError
from modelmap.orchestrator.files import format_file_input, read_file_content, resolve_path


class TestReadFileContent:
    def test_reads_relative_to_root(self, tmp_path: Path) -> None:
        (tmp_path / "pkg").mkdir()
        (tmp_path / "pkg" / "mod.py").write_text("x = 1\n")

        assert read_file_content("pkg/mod.py", 100, tmp_path) == "x = 1\n"

    def test_too_large(self, tmp_path: Path) -> None:
        (tmp_path / "big.py").write_text("a" * 101)

        with pytest.raises(FileSkippedError) as exc_info:
            read_file_content("big.py", 100, tmp_path)

        assert exc_info.value.reason == "File too large (101 bytes > 100 bytes)"

    def test_missing_or_blank(self, tmp_path: Path) -> None:
        (tmp_path / "blank.py").write_text("  \n\n")

        for name in ("missing.py", "blank.py"):
            with pytest.raises(FileSkippedError) as exc_info:
                read_file_content(name, 100, tmp_path)
            assert exc_info.value.reason == "File not found or empty"

    def test_resolve_path(self, tmp_path: Path) -> None:
        assert resolve_path("a.py") == Path("a.py")
        assert resolve_path("a.py", tmp_path) == tmp_path / "a.py"
        assert resolve_path(str(tmp_path / "b.py"), "/elsewhere") == tmp_path / "b.py"


class TestFormatFileInput:
    def test_language_tag(self) -> None:
        assert format_file_input("src/app.ts", "let x;") == "### File: src/app.ts\n```ts\nlet x;\n```"

    def test_no_extension(self) -> None:
        assert format_file_input("Makefile", "all:") == "### File: Makefile\n```txt\nall:\n```"
