"""符号上下文压缩

为提示词生成紧凑的文件符号摘要（每个文件几十个 token）。
"""

import re

from modelmap.symbols.types import (
    CodebaseStructure,
    CodeSymbol,
    CompressedSymbolContext,
    FileConnectivity,
    FileSymbolInfo,
    SymbolKind,
    SymbolVisibility,
)

SECURITY_PATTERN = re.compile(r"auth|security|crypto|password|token|session", re.IGNORECASE)


def compress_file_context(file: str, structure: CodebaseStructure) -> CompressedSymbolContext:
    """生成文件的压缩符号上下文"""
    info = structure.files.get(file)
    if info is None:
        return CompressedSymbolContext(summary="Unknown file")

    connectivity = structure.connectivity.get(file)
    exported = [s for s in info.symbols if s.is_exported]

    return CompressedSymbolContext(
        summary=_file_summary(info),
        exports=[_format_symbol(s) for s in exported[:10]],
        dependencies=[i.source for i in info.imports if not i.source.startswith(".")][:5],
        dependent_count=connectivity.transitive_importers if connectivity else 0,
        is_entry_point=file in structure.dependency_graph.entry_points,
        risk_indicators=_risk_indicators(file, structure, connectivity),
    )


def format_context_for_prompt(context: CompressedSymbolContext) -> str:
    """将压缩上下文格式化为提示词片段"""
    lines = [f"> {context.summary}"]

    if context.exports:
        lines.append(f"Exports: {', '.join(context.exports[:5])}")
        if len(context.exports) > 5:
            lines.append(f"  ...and {len(context.exports) - 5} more")

    if context.dependencies:
        lines.append(f"Uses: {', '.join(context.dependencies)}")

    if context.dependent_count > 0:
        plural = "s" if context.dependent_count > 1 else ""
        lines.append(f"Imported by {context.dependent_count} file{plural}")

    if context.risk_indicators:
        lines.append(f"[{', '.join(context.risk_indicators)}]")

    return "\n".join(lines)


def _file_summary(info: FileSymbolInfo) -> str:
    exported = [s for s in info.symbols if s.is_exported]
    main = next(
        (s for s in exported if s.visibility == SymbolVisibility.EXPORT_DEFAULT),
        exported[0] if exported else None,
    )
    if main:
        doc = f": {main.doc_summary}" if main.doc_summary else ""
        return f"{main.kind.value} {main.name}{doc}"

    counts = [
        (sum(1 for s in info.symbols if s.kind == SymbolKind.CLASS), "class", "classes"),
        (sum(1 for s in info.symbols if s.kind == SymbolKind.FUNCTION), "function", "functions"),
        (
            sum(1 for s in info.symbols if s.kind in (SymbolKind.INTERFACE, SymbolKind.TYPE)),
            "type",
            "types",
        ),
    ]
    parts = [f"{n} {plural if n > 1 else single}" for n, single, plural in counts if n]
    if not parts:
        return f"{len(info.symbols)} symbols, {len(info.imports)} imports"
    return f"Module with {', '.join(parts)}"


def _format_symbol(symbol: CodeSymbol) -> str:
    if symbol.kind == SymbolKind.FUNCTION:
        if symbol.signature and len(symbol.signature) < 60:
            return symbol.signature
        return f"{symbol.name}(...)"
    if symbol.kind == SymbolKind.CLASS:
        ext = f" extends {symbol.extends[0]}" if symbol.extends else ""
        return f"class {symbol.name}{ext}"
    if symbol.kind in (SymbolKind.INTERFACE, SymbolKind.TYPE, SymbolKind.ENUM):
        return f"{symbol.kind.value} {symbol.name}"
    if symbol.kind == SymbolKind.CONSTANT:
        sig = f": {symbol.signature}" if symbol.signature else ""
        return f"const {symbol.name}{sig}"
    return f"{symbol.kind.value} {symbol.name}"


def _risk_indicators(
    file: str,
    structure: CodebaseStructure,
    connectivity: FileConnectivity | None,
) -> list[str]:
    graph = structure.dependency_graph
    indicators = []
    if file in graph.entry_points:
        indicators.append("entry-point")
    if graph.in_cycle(file):
        indicators.append("circular-dep")
    if connectivity and connectivity.transitive_importers > 10:
        indicators.append("high-impact")
    if file in structure.barrel_files:
        indicators.append("barrel")
    if SECURITY_PATTERN.search(file):
        indicators.append("security")
    return indicators
