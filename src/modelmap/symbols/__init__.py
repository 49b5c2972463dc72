"""符号化：依赖图、代码库结构与上下文压缩"""

from .context import compress_file_context, format_context_for_prompt
from .graph import (
    DependencyGraphBuilder,
    ProcessingOrder,
    get_dependency_summaries,
    get_optimal_processing_order,
)
from .structure import build_codebase_structure, format_symbolication_result
from .types import (
    CodebaseStructure,
    CodeSymbol,
    CompressedSymbolContext,
    DependencyEdge,
    DependencyGraph,
    EdgeType,
    ExportStatement,
    FileConnectivity,
    FileSymbolInfo,
    ImportedName,
    ImportStatement,
    SymbolExtractor,
    SymbolicationResult,
    SymbolKind,
    SymbolVisibility,
)

__all__ = [
    # Graph
    "DependencyGraphBuilder",
    "ProcessingOrder",
    "get_optimal_processing_order",
    "get_dependency_summaries",
    # Structure
    "build_codebase_structure",
    "format_symbolication_result",
    "compress_file_context",
    "format_context_for_prompt",
    # Types
    "CodeSymbol",
    "SymbolKind",
    "SymbolVisibility",
    "ImportedName",
    "ImportStatement",
    "ExportStatement",
    "FileSymbolInfo",
    "SymbolExtractor",
    "EdgeType",
    "DependencyEdge",
    "DependencyGraph",
    "FileConnectivity",
    "CodebaseStructure",
    "SymbolicationResult",
    "CompressedSymbolContext",
]
