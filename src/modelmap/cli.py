"""ModelMap CLI 入口

提供模型映射配置的检查命令：路由决策、角色表、流水线列表和依赖图分析。
"""

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from modelmap.core.config import get_settings
from modelmap.core.exceptions import ConfigurationError
from modelmap.core.logging import setup_logging
from modelmap.model_map.registry import ModelRegistry
from modelmap.model_map.router import ModelRoute, TaskRouter
from modelmap.model_map.schema import ModelDefinition, load_model_map
from modelmap.symbols.graph import DependencyGraphBuilder, get_optimal_processing_order
from modelmap.symbols.types import FileSymbolInfo

app = typer.Typer(
    name="modelmap",
    help="ModelMap - 多模型流水线编排检查工具",
    add_completion=False,
)
console = Console()


ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="模型映射配置文件（默认 modelmap.yaml）"),
]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="输出调试日志")] = False,
):
    """ModelMap CLI - 检查模型路由与流水线配置"""
    setup_logging(get_settings().log_level, verbose)


# ==================== 辅助函数 ====================


def _offline_provider_factory(name: str, definition: ModelDefinition):
    raise ConfigurationError(f'Model "{name}" cannot be instantiated from the inspection CLI')


def _load_router(config: Path | None) -> TaskRouter:
    """加载配置并构建路由器，失败时打印错误并退出"""
    path = config or get_settings().config_path
    try:
        model_map = load_model_map(path)
    except ConfigurationError as e:
        console.print(f"[red]错误: {e}[/red]")
        raise typer.Exit(1)

    registry = ModelRegistry(model_map, _offline_provider_factory)
    return TaskRouter(model_map, registry)


# ==================== 命令 ====================


@app.command()
def route(
    command: str = typer.Argument(..., help="命令名（如 review、explain）"),
    config: ConfigOption = None,
):
    """显示命令的路由决策"""
    router = _load_router(config)

    try:
        result = router.route_command(command)
    except ConfigurationError as e:
        console.print(f"[red]错误: {e}[/red]")
        raise typer.Exit(1)

    if isinstance(result, ModelRoute):
        resolved = result.model
        console.print(
            f"[cyan]{command}[/cyan] -> 模型 [green]{resolved.name}[/green] "
            f"({resolved.provider}/{resolved.model})"
        )
        return

    console.print(f"[cyan]{command}[/cyan] -> 流水线 [green]{result.pipeline_name}[/green]")
    for i, step in enumerate(result.pipeline.steps, 1):
        target = step.model or f"role:{step.role}"
        console.print(f"  {i}. {step.name} [dim]({target})[/dim]")


@app.command()
def roles(config: ConfigOption = None):
    """列出角色在各 provider 上下文中映射的模型"""
    router = _load_router(config)
    role_names = router.get_roles()

    if not role_names:
        console.print("[yellow]配置中没有定义 model-roles[/yellow]")
        return

    contexts = sorted({ctx for role in role_names for ctx in router.get_role_providers(role)})
    table = Table(title="模型角色")
    table.add_column("角色", style="cyan")
    for ctx in contexts:
        table.add_column(ctx, style="green")

    for role in role_names:
        cells = []
        for ctx in contexts:
            resolved = router.resolve_role(role, ctx)
            cells.append(resolved.name if resolved else "[dim]-[/dim]")
        table.add_row(role, *cells)

    console.print(table)


@app.command()
def pipelines(config: ConfigOption = None):
    """列出配置中的流水线及其步骤"""
    router = _load_router(config)
    names = router.get_pipeline_names()

    if not names:
        console.print("[yellow]配置中没有定义流水线[/yellow]")
        return

    table = Table(title="流水线")
    table.add_column("名称", style="cyan")
    table.add_column("描述")
    table.add_column("Provider")
    table.add_column("步骤", style="green")

    for name in names:
        pipeline = router.get_pipeline(name)
        steps = " → ".join(
            f"{s.name}({s.model or s.role})" + (r" \[tools]" if s.allow_tool_use else "")
            for s in pipeline.steps
        )
        table.add_row(name, pipeline.description or "", pipeline.provider or "-", steps)

    console.print(table)


@app.command()
def graph(
    symbols_file: Path = typer.Argument(..., help="符号信息 JSON 文件（由外部提取器生成）"),
    root: Path = typer.Option(Path("."), "--root", "-r", help="项目根目录"),
):
    """分析依赖图：入口文件、循环依赖与处理层级"""
    if not symbols_file.exists():
        console.print(f"[red]错误: 文件不存在: {symbols_file}[/red]")
        raise typer.Exit(1)

    try:
        data = json.loads(symbols_file.read_text(encoding="utf-8"))
        records = data.values() if isinstance(data, dict) else data
        infos = {
            info.file: info for info in (FileSymbolInfo.from_dict(record) for record in records)
        }
    except (ValueError, KeyError, TypeError) as e:
        console.print(f"[red]错误: 符号文件格式无效: {e}[/red]")
        raise typer.Exit(1)

    builder = DependencyGraphBuilder(root)
    dependency_graph = builder.build(infos)
    order = get_optimal_processing_order(dependency_graph, list(infos))

    console.print(
        f"[bold]{len(infos)}[/bold] 个文件, [bold]{len(dependency_graph.edges)}[/bold] 条依赖"
    )

    if dependency_graph.entry_points:
        console.print("\n[cyan]入口文件:[/cyan]")
        for entry in dependency_graph.entry_points:
            console.print(f"  • {entry}")

    if dependency_graph.cycles:
        console.print(f"\n[yellow]循环依赖 ({len(dependency_graph.cycles)}):[/yellow]")
        for cycle in dependency_graph.cycles:
            console.print(f"  • {' → '.join(cycle)}")

    table = Table(title="处理层级")
    table.add_column("层", justify="right", style="cyan")
    table.add_column("文件数", justify="right")
    table.add_column("文件", style="green")
    for tier, files in sorted(order.tier_files.items()):
        shown = ", ".join(files[:5]) + (f" ... (+{len(files) - 5})" if len(files) > 5 else "")
        table.add_row(str(tier), str(len(files)), shown)

    console.print(table)


if __name__ == "__main__":
    app()
