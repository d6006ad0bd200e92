"""
BookGen CLI 工具
命令行接口：创建书籍、运行回合、审批、查看状态与恢复
"""
import logging
from typing import Optional, Annotated

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import print as rprint

from bookgen.errors import BookGenError, MalformedProjectError
from bookgen.models import GenerationMode, TurnResult
from bookgen.services.book_service import BookService


app = typer.Typer(
    name="bookgen",
    help="BookGen - 分阶段书籍生成引擎",
    add_completion=False,
    rich_markup_mode="rich"
)

console = Console()

_service: Optional[BookService] = None


def get_service() -> BookService:
    global _service
    if _service is None:
        _service = BookService()
    return _service


def _print_turn(result: TurnResult):
    """打印回合结果"""
    phase = result.phase.value if result.phase else "-"
    console.print(Panel(f"🔁 回合 [bold]{result.turn_id}[/bold]  阶段: {phase}", expand=False))

    for effect in result.committed_effects:
        rprint(f"  [green]✅[/green] {effect.tool_name} {effect.summary}")
    for failed in result.failed_invocations:
        rprint(f"  [yellow]⚠️[/yellow] {failed['tool_name']}: {failed['error']}")
    for discarded in result.discarded:
        rprint(f"  [dim]⏭️ {discarded.tool_name} ({discarded.reason})[/dim]")

    if result.question:
        rprint(f"\n[bold]❓ {result.question.question}[/bold]")
        for i, suggestion in enumerate(result.question.suggestions, 1):
            rprint(f"  {i}. {suggestion}")

    if result.pending_approval:
        pending = result.pending_approval
        rprint(f"\n[yellow]⏳ 等待审批: {pending.tool_name} ({pending.id})[/yellow]")
        rprint(f"   bookgen approve {pending.id}  /  bookgen reject {pending.id} --reason ...")

    if result.error:
        rprint(f"\n[red]❌ {result.error.kind.value}: {result.error.message}[/red]")


@app.command()
def create(
    title: Annotated[str, typer.Argument(help="书名")],
    book_type: Annotated[str, typer.Option("--type", "-t", help="内容类别：fiction/non_fiction/childrens/educational")] = "fiction",
    auto: Annotated[bool, typer.Option("--auto", help="使用自动生成模式（默认逐章手动）")] = False,
):
    """创建书籍项目"""
    mode = GenerationMode.AUTO if auto else GenerationMode.MANUAL
    project = get_service().create_project(title, book_type, mode)
    rprint(f"[green]✅ 已创建项目 {project.id}[/green] 《{project.title}》")


@app.command()
def status(
    project_id: Annotated[str, typer.Argument(help="项目ID")],
):
    """查看项目状态、阶段与章节进度"""
    service = get_service()
    try:
        project = service.get_project(project_id)
    except BookGenError as e:
        rprint(f"[red]❌ {e.message}[/red]")
        raise typer.Exit(1)

    try:
        phase = service.resolve_phase(project_id).value
    except MalformedProjectError as e:
        phase = f"[red]数据非法: {e.message}[/red]"

    console.print(Panel(f"📁 项目: [bold]{project.title}[/bold] ({project.id})", expand=False))
    rprint(f"  状态: {project.status.value}   阶段: {phase}   模式: {project.mode.value}")
    rprint(f"  已用积分: {project.credits_used}")

    resume = service.get_resume_state(project_id)
    if resume.last_checkpoint:
        rprint(f"  最近检查点: {resume.last_checkpoint.step}（重试 {resume.retry_count}/{service.config.max_retries}）")
    if resume.can_resume:
        rprint("  [yellow]🔄 可以通过 bookgen retry 恢复[/yellow]")

    pending = service.get_pending(project_id)
    if pending:
        rprint(f"  [yellow]⏳ 待审批: {pending.tool_name} ({pending.id})[/yellow]")

    chapters = service.list_chapters(project_id)
    if project.structure:
        table = Table(show_header=True, header_style="bold")
        table.add_column("编号", style="cyan", width=6)
        table.add_column("标题", width=30)
        table.add_column("字数", justify="right", width=10)
        table.add_column("版本", justify="center", width=6)
        written = {ch.chapter_number: ch for ch in chapters}
        numbers = ([0] if project.structure.has_prologue else []) + list(range(1, project.structure.chapter_count + 1))
        if project.structure.has_epilogue:
            numbers.append(project.structure.chapter_count + 1)
        for number in numbers:
            ch = written.get(number)
            title = project.structure.title_for(number)
            if ch and ch.is_written:
                table.add_row(str(number), ch.title or title, f"{ch.word_count:,}", f"v{ch.version}")
            else:
                table.add_row(str(number), title, "-", "[dim]待生成[/dim]")
        console.print(table)


@app.command()
def turn(
    project_id: Annotated[str, typer.Argument(help="项目ID")],
    message: Annotated[str, typer.Option("--message", "-m", help="用户输入")] = "",
    timeout: Annotated[Optional[float], typer.Option("--timeout", help="agent 调用超时（秒）")] = None,
):
    """运行一个回合"""
    result = get_service().run_turn(project_id, message, timeout=timeout)
    _print_turn(result)
    if result.error:
        raise typer.Exit(1)


@app.command()
def approve(
    pending_id: Annotated[str, typer.Argument(help="待审批ID")],
):
    """批准挂起的工具调用"""
    try:
        result = get_service().approve(pending_id)
    except BookGenError as e:
        rprint(f"[red]❌ {e.message}[/red]")
        raise typer.Exit(1)
    if result.committed:
        rprint(f"[green]✅ 已提交 {result.pending.tool_name}[/green]，当前阶段: {result.phase.value}")
    else:
        rprint(f"[yellow]⚠️ 已批准但无法提交: {result.message}[/yellow]")


@app.command()
def reject(
    pending_id: Annotated[str, typer.Argument(help="待审批ID")],
    reason: Annotated[Optional[str], typer.Option("--reason", "-r", help="拒绝原因")] = None,
):
    """拒绝挂起的工具调用"""
    try:
        get_service().reject(pending_id, reason)
    except BookGenError as e:
        rprint(f"[red]❌ {e.message}[/red]")
        raise typer.Exit(1)
    rprint("[green]✅ 已拒绝，下一回合会参考该反馈[/green]")


@app.command()
def retry(
    project_id: Annotated[str, typer.Argument(help="项目ID")],
):
    """重试失败/暂停的项目"""
    try:
        outcome = get_service().retry(project_id)
    except BookGenError as e:
        rprint(f"[red]❌ {e.message}[/red]")
        raise typer.Exit(1)
    if outcome.turn is None:
        rprint(f"[red]❌ 已重试 {outcome.resume.retry_count} 次，恢复已禁用[/red]")
        raise typer.Exit(1)
    _print_turn(outcome.turn)
    rprint(f"  剩余重试次数: {outcome.resume.remaining_retries}")


@app.command("reset-retries")
def reset_retries(
    project_id: Annotated[str, typer.Argument(help="项目ID")],
):
    """清零重试次数（重试耗尽后人工介入）"""
    try:
        resume = get_service().reset_retries(project_id)
    except BookGenError as e:
        rprint(f"[red]❌ {e.message}[/red]")
        raise typer.Exit(1)
    rprint(f"[green]✅ 重试次数已清零[/green]，可恢复: {resume.can_resume}")


@app.command()
def pause(
    project_id: Annotated[str, typer.Argument(help="项目ID")],
):
    """暂停项目"""
    if get_service().pause(project_id):
        rprint("[green]⏸️ 已暂停[/green]")
    else:
        rprint("[yellow]⚠️ 当前状态不能暂停[/yellow]")


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="输出调试日志")] = False,
):
    """
    BookGen - 分阶段书籍生成引擎
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    app()
