"""符号化数据类型

符号提取结果、依赖图和代码库结构的数据定义。
符号提取器本身由外部提供（SymbolExtractor 协议）。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class SymbolKind(str, Enum):
    """符号类型"""

    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    TYPE = "type"
    ENUM = "enum"
    VARIABLE = "variable"
    CONSTANT = "constant"
    METHOD = "method"
    PROPERTY = "property"
    NAMESPACE = "namespace"
    MODULE = "module"


class SymbolVisibility(str, Enum):
    """符号导出状态"""

    EXPORT = "export"
    EXPORT_DEFAULT = "export-default"
    INTERNAL = "internal"


class EdgeType(str, Enum):
    """依赖边类型"""

    IMPORT = "import"
    DYNAMIC_IMPORT = "dynamic-import"
    RE_EXPORT = "re-export"


@dataclass
class CodeSymbol:
    """源码中提取的符号"""

    name: str
    kind: SymbolKind
    file: str
    line: int = 0
    visibility: SymbolVisibility = SymbolVisibility.INTERNAL
    signature: str | None = None
    doc_summary: str | None = None
    """文档注释首行"""
    parent: str | None = None
    extends: list[str] = field(default_factory=list)

    @property
    def is_exported(self) -> bool:
        return self.visibility != SymbolVisibility.INTERNAL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CodeSymbol":
        return cls(
            name=data["name"],
            kind=SymbolKind(data.get("kind", "variable")),
            file=data.get("file", ""),
            line=data.get("line", 0),
            visibility=SymbolVisibility(data.get("visibility", "internal")),
            signature=data.get("signature"),
            doc_summary=data.get("doc_summary", data.get("docSummary")),
            parent=data.get("parent"),
            extends=list(data.get("extends", [])),
        )


@dataclass
class ImportedName:
    """导入/导出语句中的单个名称"""

    name: str
    alias: str | None = None
    is_default: bool = False
    is_namespace: bool = False

    @property
    def local_name(self) -> str:
        return self.alias or self.name

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportedName":
        return cls(
            name=data["name"],
            alias=data.get("alias"),
            is_default=data.get("is_default", data.get("isDefault", False)),
            is_namespace=data.get("is_namespace", data.get("isNamespace", False)),
        )


@dataclass
class ImportStatement:
    """导入语句"""

    source: str
    """模块路径（相对路径或包名）"""
    symbols: list[ImportedName] = field(default_factory=list)
    is_type_only: bool = False
    line: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportStatement":
        return cls(
            source=data["source"],
            symbols=[ImportedName.from_dict(s) for s in data.get("symbols", [])],
            is_type_only=data.get("is_type_only", data.get("isTypeOnly", False)),
            line=data.get("line", 0),
        )


@dataclass
class ExportStatement:
    """导出语句（source 非空时为再导出）"""

    source: str | None = None
    symbols: list[ImportedName] = field(default_factory=list)
    is_type_only: bool = False
    line: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExportStatement":
        return cls(
            source=data.get("source"),
            symbols=[ImportedName.from_dict(s) for s in data.get("symbols", [])],
            is_type_only=data.get("is_type_only", data.get("isTypeOnly", False)),
            line=data.get("line", 0),
        )


@dataclass
class FileSymbolInfo:
    """单个文件的完整符号信息"""

    file: str
    symbols: list[CodeSymbol] = field(default_factory=list)
    imports: list[ImportStatement] = field(default_factory=list)
    exports: list[ExportStatement] = field(default_factory=list)
    extraction_method: str = "external"
    errors: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileSymbolInfo":
        """从 JSON 字典构建（兼容 camelCase 字段名）"""
        return cls(
            file=data["file"],
            symbols=[CodeSymbol.from_dict(s) for s in data.get("symbols", [])],
            imports=[ImportStatement.from_dict(i) for i in data.get("imports", [])],
            exports=[ExportStatement.from_dict(e) for e in data.get("exports", [])],
            extraction_method=data.get("extraction_method", data.get("extractionMethod", "external")),
            errors=list(data.get("errors", [])),
        )


@runtime_checkable
class SymbolExtractor(Protocol):
    """符号提取器协议（解析器由外部提供）"""

    def extract(self, content: str, file_path: str) -> FileSymbolInfo:
        ...


@dataclass
class DependencyEdge:
    """依赖图中的有向边：from_file 依赖 to_file"""

    from_file: str
    """导入方"""
    to_file: str
    """被导入方（已解析路径）"""
    type: EdgeType = EdgeType.IMPORT
    symbols: list[str] = field(default_factory=list)
    """导入的符号（空表示整体/通配）"""
    is_type_only: bool = False


@dataclass
class DependencyGraph:
    """代码库依赖图

    注意 roots / leaves 的含义与常见树术语相反：
    - roots: 出度为 0 的文件（不导入集合内任何文件）
    - leaves: 入度为 0 的文件（集合内没有文件依赖它）
    独立的别名属性 independent_files / unreferenced_files 给出更直观的名字。
    """

    edges: list[DependencyEdge] = field(default_factory=list)
    roots: list[str] = field(default_factory=list)
    leaves: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    """循环依赖（仅保留大小 > 1 的强连通分量）"""
    entry_points: list[str] = field(default_factory=list)
    resolutions: dict[str, str] = field(default_factory=dict)
    """"{from}:{specifier}" -> 解析后的文件路径"""

    @property
    def independent_files(self) -> list[str]:
        """不依赖集合内其他文件的文件（= roots）"""
        return self.roots

    @property
    def unreferenced_files(self) -> list[str]:
        """集合内没有任何文件依赖的文件（= leaves）"""
        return self.leaves

    def in_cycle(self, file: str) -> bool:
        return any(file in cycle for cycle in self.cycles)


@dataclass
class FileConnectivity:
    """文件连通性指标（完全由依赖图推导）"""

    in_degree: int = 0
    out_degree: int = 0
    transitive_importers: int = 0
    """传递依赖此文件的文件数（不含自身）"""
    is_critical_path: bool = False
    """是否可从入口文件沿依赖关系到达"""
    direct_dependents: list[str] = field(default_factory=list)
    direct_dependencies: list[str] = field(default_factory=list)


@dataclass
class StructureMetadata:
    built_at: datetime = field(default_factory=datetime.now)
    total_files: int = 0
    total_symbols: int = 0
    build_duration_ms: float = 0


@dataclass
class CodebaseStructure:
    """代码库符号结构"""

    files: dict[str, FileSymbolInfo] = field(default_factory=dict)
    symbol_index: dict[str, list[str]] = field(default_factory=dict)
    """符号名 -> 定义文件列表（仅导出符号）"""
    dependency_graph: DependencyGraph = field(default_factory=DependencyGraph)
    connectivity: dict[str, FileConnectivity] = field(default_factory=dict)
    barrel_files: list[str] = field(default_factory=list)
    """以再导出为主的 index 文件"""
    metadata: StructureMetadata = field(default_factory=StructureMetadata)


@dataclass
class SymbolicationError:
    file: str
    error: str


@dataclass
class SymbolicationResult:
    """符号化阶段结果"""

    structure: CodebaseStructure
    duration_ms: float = 0
    errors: list[SymbolicationError] = field(default_factory=list)


@dataclass
class CompressedSymbolContext:
    """压缩后的文件符号上下文（供提示词使用）"""

    summary: str
    exports: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    """外部依赖（最多 5 个）"""
    dependent_count: int = 0
    is_entry_point: bool = False
    risk_indicators: list[str] = field(default_factory=list)
