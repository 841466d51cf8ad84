#!/usr/bin/env python3
"""
发音评测引擎 - 命令行入口

支持以下命令：
- analyze: 单文件评测
- batch: 通过任务队列批量评测
- health: 检查各 provider 是否可用
- config: 查看合并后的配置（凭证脱敏）
"""
import asyncio
import csv
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from pronscore.config import AnalysisConfig, load_config
from pronscore.errors import AllProvidersFailed, InvalidInput
from pronscore.models import AnalysisResult, AnalyzeOptions, ProviderName
from pronscore.pipeline.ensemble import EnsembleOrchestrator

__version__ = "0.1.0"

# 创建 CLI 应用
app = typer.Typer(
    name="pronscore",
    help="英语发音评测引擎 CLI",
    add_completion=False,
)

# 控制台输出
console = Console()

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(console=console, rich_tracebacks=True)],
)
logger = logging.getLogger("pronscore")


def mask_key(key: Any) -> str:
    if not key:
        return ""
    key = str(key)
    if len(key) > 6:
        return f"{key[:3]}...{key[-3:]}"
    return "***"


def parse_engines(engine: str) -> list[str] | None:
    """'auto' 表示按配置优先级；否则为逗号分隔的 provider 偏好顺序"""
    if engine.lower() == "auto":
        return None
    names = [name.strip().lower() for name in engine.split(",") if name.strip()]
    valid = {p.value for p in ProviderName}
    invalid = [name for name in names if name not in valid]
    if invalid:
        raise typer.BadParameter(f"无效的 provider: {', '.join(invalid)} (可选: {', '.join(sorted(valid))})")
    return names


def print_result(result: AnalysisResult) -> None:
    console.print()
    console.print(f"[bold]综合得分: {result.overall_score:.1f}[/bold]  (置信度 {result.confidence:.1f})")
    console.print(f"  GOP: {result.gop_score.overall:.1f}")
    console.print(
        f"  相似度: {result.native_similarity.overall:.1f} "
        f"(dtw={result.native_similarity.dtw_distance:.3f}, {result.native_similarity.dtw_method})"
    )
    console.print(
        f"  韵律: 重音 {result.prosody.stress.naturalness:.2f} / "
        f"节奏 {result.prosody.rhythm.naturalness:.2f} / "
        f"语调 {result.prosody.intonation.naturalness:.2f} / "
        f"{result.prosody.pace.words_per_minute:.0f} wpm"
    )
    console.print(f"  使用模型: {', '.join(result.model_used)}  ({result.processing_time} ms)")

    if result.words:
        table = Table(title="词级结果")
        table.add_column("词")
        table.add_column("时间", justify="right")
        table.add_column("准确度", justify="right")
        table.add_column("重音", justify="right")
        table.add_column("音素")
        for w in result.words:
            color = "green" if w.accuracy >= 80 else "yellow" if w.accuracy >= 60 else "red"
            table.add_row(
                w.word,
                f"{w.start:.2f}-{w.end:.2f}",
                f"[{color}]{w.accuracy:.0f}[/{color}]",
                f"{w.stress:.2f}",
                " ".join(p.phoneme for p in w.phonemes),
            )
        console.print(table)

    if result.audio_quality.issues:
        console.print("[yellow]音频质量问题:[/yellow]")
        for issue in result.audio_quality.issues:
            console.print(f"  - {issue}")

    fb = result.feedback
    console.print()
    console.print(f"[bold]{fb.overall}[/bold]")
    for title, items in (
        ("优点", fb.strengths),
        ("改进", fb.improvements),
        ("提示", fb.specific_tips),
        ("下一步", fb.next_steps),
    ):
        if items:
            console.print(f"{title}:")
            for item in items:
                console.print(f"  - {item}")


@app.command()
def analyze(
    audio: Path = typer.Option(..., "--audio", help="输入音频文件（WAV/MP3/OGG 或 16-bit PCM）"),
    text: str = typer.Option(..., "--text", help="目标句子"),
    engine: str = typer.Option("auto", "--engine", help="auto 或逗号分隔的 provider 顺序，如 azure,local"),
    accent: Optional[str] = typer.Option(None, "--accent", help="学习者口音（可选）"),
    json_out: Optional[Path] = typer.Option(None, "--json", help="把完整结果写入 JSON 文件"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="配置文件路径"),
) -> None:
    """
    单文件评测

    并发调用所有启用的 provider，融合后输出综合得分、词级结果和建议。
    """
    from pronscore.pipeline.runner import analyze_audio

    if not audio.exists():
        console.print(f"[red]错误: 音频文件不存在: {audio}[/red]")
        raise typer.Exit(1)

    options = AnalyzeOptions(model_preference=parse_engines(engine), user_accent=accent)
    analysis_config = AnalysisConfig.load(config_path)

    console.print("\n[bold blue]📝 开始评测[/bold blue]")
    console.print(f"  音频: {audio}")
    console.print(f"  文本: {text[:50]}..." if len(text) > 50 else f"  文本: {text}")
    console.print(f"  引擎: {engine}")

    async def run() -> AnalysisResult:
        orchestrator = EnsembleOrchestrator(analysis_config)
        try:
            return await analyze_audio(audio.read_bytes(), text, options, orchestrator=orchestrator)
        finally:
            await orchestrator.close()

    try:
        result = asyncio.run(run())
    except InvalidInput as e:
        console.print(f"[red]❌ 输入无效: {e}[/red]")
        raise typer.Exit(1)
    except AllProvidersFailed as e:
        console.print(f"[red]❌ 评测失败: {e}[/red]")
        for outcome in e.outcomes:
            console.print(f"  - {outcome.provider}: {outcome.error}")
        raise typer.Exit(1)

    console.print("\n[bold green]✅ 评测完成！[/bold green]")
    print_result(result)

    if json_out is not None:
        json_out.parent.mkdir(parents=True, exist_ok=True)
        with open(json_out, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, ensure_ascii=False, indent=2)
        console.print(f"\nJSON: {json_out}")


def load_manifest(manifest_path: Path) -> list[dict[str, str]]:
    """
    加载 manifest CSV 文件

    必须包含列：audio_path, text；可选列：user_id。
    相对路径以 manifest 所在目录为基准。
    """
    with open(manifest_path, encoding="utf-8") as f:
        reader = csv.DictReader(f)
        required_columns = {"audio_path", "text"}
        missing = required_columns - set(reader.fieldnames or [])
        if missing:
            raise ValueError(f"Manifest 缺少必要的列: {missing}")
        rows = list(reader)

    for row in rows:
        path = Path(row["audio_path"])
        if not path.is_absolute():
            row["audio_path"] = str(manifest_path.parent / path)
    return rows


@app.command()
def batch(
    manifest: Path = typer.Option(..., "--manifest", help="提交清单 CSV 文件 (audio_path,text[,user_id])"),
    out: Path = typer.Option(Path("./data/out"), "--out", help="输出目录"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", help="并发任务数（默认取配置 queue.workers）"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="配置文件路径"),
) -> None:
    """
    批量评测

    通过任务队列并发处理 manifest 中的所有音频，已缓存的结果直接复用。
    """
    from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn

    from pronscore.services.cache import InMemoryAnalysisCache
    from pronscore.services.queue import JobQueue, JobStatus

    if not manifest.exists():
        console.print(f"[red]错误: Manifest 文件不存在: {manifest}[/red]")
        raise typer.Exit(1)

    try:
        rows = load_manifest(manifest)
    except ValueError as e:
        console.print(f"[red]错误: {e}[/red]")
        raise typer.Exit(1)

    if not rows:
        console.print("[yellow]没有需要处理的提交[/yellow]")
        return

    analysis_config = AnalysisConfig.load(config_path)
    out.mkdir(parents=True, exist_ok=True)

    async def run() -> dict[str, Any]:
        orchestrator = EnsembleOrchestrator(analysis_config)
        queue = JobQueue.from_config(
            analysis_config,
            orchestrator,
            cache=InMemoryAnalysisCache.from_config(analysis_config),
            jobs_file=out / "jobs.json",
        )
        if jobs:
            queue.num_workers = jobs
        queue.start()
        job_ids: list[tuple[str, dict[str, str]]] = []
        summary: dict[str, Any] = {"total": len(rows), "success": 0, "failed": 0, "errors": []}

        def collect(job_id: str, row: dict[str, str]) -> bool:
            """任务结束时立即写出结果（已结束的任务可能被队列淘汰）"""
            job = queue.get_status(job_id)
            if job is None:
                summary["failed"] += 1
                summary["errors"].append(f"{row['audio_path']}: 任务状态已被淘汰")
                return True
            if job.status == JobStatus.COMPLETED:
                summary["success"] += 1
                with open(out / f"{Path(row['audio_path']).stem}_{job_id[:8]}.json", "w", encoding="utf-8") as f:
                    json.dump(job.result, f, ensure_ascii=False, indent=2)
                return True
            if job.status == JobStatus.FAILED:
                summary["failed"] += 1
                summary["errors"].append(f"{row['audio_path']}: {job.error}")
                return True
            return False

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                console=console,
            ) as progress:
                progress_task = progress.add_task("处理中...", total=len(rows))
                for row in rows:
                    audio_path = Path(row["audio_path"])
                    if not audio_path.exists():
                        logger.warning(f"音频文件不存在，跳过: {audio_path}")
                        progress.advance(progress_task)
                        continue
                    job_id = await queue.enqueue(
                        audio_path.read_bytes(), row["text"], {"user_id": row.get("user_id") or None}
                    )
                    job_ids.append((job_id, row))

                done: set[str] = set()
                while len(done) < len(job_ids):
                    for job_id, row in job_ids:
                        if job_id not in done and collect(job_id, row):
                            done.add(job_id)
                            progress.advance(progress_task)
                    await asyncio.sleep(0.1)
        finally:
            await queue.stop()
            await orchestrator.close()

        summary["failed"] += len(rows) - len(job_ids)
        return summary

    console.print("\n[bold blue]📦 开始批量评测[/bold blue]")
    console.print(f"  Manifest: {manifest}")
    console.print(f"  共 {len(rows)} 条")
    summary = asyncio.run(run())

    console.print()
    console.print("[bold green]✅ 批量评测完成！[/bold green]")
    console.print(f"  总计: {summary['total']}")
    console.print(f"  成功: [green]{summary['success']}[/green]")
    console.print(f"  失败: [red]{summary['failed']}[/red]")
    for err in summary["errors"][:10]:
        console.print(f"  - {err}")
    console.print(f"输出目录: {out}")


@app.command()
def health(
    config_path: Optional[Path] = typer.Option(None, "--config", help="配置文件路径"),
) -> None:
    """检查各 provider 是否可用"""
    analysis_config = AnalysisConfig.load(config_path)

    async def run() -> dict[str, bool]:
        orchestrator = EnsembleOrchestrator(analysis_config)
        try:
            return await orchestrator.health()
        finally:
            await orchestrator.close()

    status = asyncio.run(run())

    table = Table(title="Provider 状态")
    table.add_column("Provider")
    table.add_column("启用")
    table.add_column("优先级", justify="right")
    table.add_column("超时 (ms)", justify="right")
    table.add_column("可用")
    for name, ok in status.items():
        model = analysis_config.models[name]
        table.add_row(
            name,
            "是" if model.enabled else "否",
            str(model.priority),
            str(model.timeout),
            "[green]✅[/green]" if ok else "[red]❌[/red]",
        )
    console.print(table)


@app.command("config")
def show_config(
    config_path: Optional[Path] = typer.Option(None, "--config", help="配置文件路径"),
) -> None:
    """显示合并后的配置（API Key 脱敏）"""
    data = load_config(config_path).as_dict()
    for model in data.get("models", {}).values():
        if model.get("api_key"):
            model["api_key"] = mask_key(model["api_key"])
    console.print_json(json.dumps(data, ensure_ascii=False))


@app.command()
def version() -> None:
    """显示版本信息"""
    console.print(f"pronscore v{__version__}")


def main() -> None:
    """CLI 主入口"""
    app()


if __name__ == "__main__":
    main()
