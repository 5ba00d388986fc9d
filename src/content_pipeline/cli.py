"""Command-line entry points for the content pipeline."""

import json
import dataclasses
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Any, List

import typer
from pydantic import BaseModel
from rich import print as rprint

from .config import Settings, get_settings
from .classifier import TagClassifier
from .errors import PipelineError
from .models import ContentRequest, Template
from .monitor import PipelineMonitor
from .orchestrator import ContentPipelineOrchestrator, PipelineRun
from .providers import UnavailableProvider, for_classification, resolve_provider
from .schema import parse_request
from .store import InMemoryRecordStore, JsonlRecordStore
from .textstats import headings
from .validator import TemplateValidator, ValidationTarget

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

app = typer.Typer(
    help="Generate, validate, and monitor marketing content built from source records."
)


def _configure_logging(verbose: bool, settings: Settings | None = None) -> None:
    level = logging.DEBUG if verbose else getattr(
        logging, (settings or get_settings()).log_level.upper(), logging.INFO
    )
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


def _build_orchestrator(
    records: Optional[Path], *, no_ai: bool = False
) -> ContentPipelineOrchestrator:
    store = JsonlRecordStore(records) if records else InMemoryRecordStore()
    provider = UnavailableProvider("Disabled with --no-ai.") if no_ai else None
    return ContentPipelineOrchestrator(store, provider=provider)


def _load_request(path: Optional[Path], *, no_ai: bool = False) -> ContentRequest:
    if path is None:
        raise typer.BadParameter("Provide a JSON file containing exactly one content request.")
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, list):
        if len(data) != 1:
            raise typer.BadParameter("The JSON file must contain exactly one content request.")
        data = data[0]
    request = parse_request(data)
    if no_ai:
        request = request.model_copy(update={"use_ai": False})
    return request


def _collect_request_paths(inputs: List[Path]) -> List[Path]:
    paths: List[Path] = []
    for path in inputs:
        if path.is_dir():
            paths.extend(sorted(p for p in path.iterdir() if p.suffix.lower() == ".json"))
        else:
            paths.append(path)
    return paths


def _to_plain(value: Any) -> Any:
    """
    Convert dataclasses, pydantic models, Paths, and date-like objects into
    JSON-serializable primitives. Tuples and sets become lists.
    """
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _to_plain(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_plain(item) for item in value]
    return value


def _write_output(out_path: Path, markdown: str, json_payload: dict) -> None:
    suffix = out_path.suffix.lower()
    if suffix == ".json":
        out_path.write_text(
            json.dumps(json_payload, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
    else:
        out_path.write_text(markdown, encoding="utf-8")


def _batch_output_path(outdir: Path, path: Path, index: int, fmt: str) -> Path:
    suffix = ".json" if fmt == "json" else ".md"
    return outdir / f"{index:03d}-{path.stem}{suffix}"


def _run_markdown(run: PipelineRun) -> str:
    if run.content is None:
        return f"<!-- {run.pipeline_id}: {run.reason or 'no content'} -->\n"
    return f"# {run.content.content_title}\n\n{run.content.body}\n"


def _print_run(run: PipelineRun) -> None:
    if run.success:
        rprint(
            f"[green]{run.pipeline_id} done: {run.content.content_type} "
            f"(validation {run.validation.overall_score:.2f}, "
            f"quality {run.content.quality_metrics.quality_score:.2f})[/green]"
        )
        if run.workflow_id:
            rprint(f"[cyan]Approval workflow {run.workflow_id} created[/cyan]")
    else:
        rprint(f"[red]{run.pipeline_id} failed ({run.failure_kind}): {run.reason}[/red]")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
):
    """Configure logging for every command."""
    _configure_logging(verbose)


@app.command("run")
def run_command(
    path: Path = typer.Argument(..., help="Path to a JSON content request."),
    records: Optional[Path] = typer.Option(
        None,
        "--records",
        "-r",
        help="Directory of <source_type>.jsonl record files.",
    ),
    out: Optional[Path] = typer.Option(
        None,
        "--out",
        "-o",
        help="Optional path to write output (.md or .json). Defaults to stdout (Markdown).",
    ),
    no_ai: bool = typer.Option(False, "--no-ai", help="Skip every AI step."),
):
    """
    Run one request through gather -> select -> generate -> validate -> approve.
    """
    try:
        request = _load_request(path, no_ai=no_ai)
        run = _build_orchestrator(records, no_ai=no_ai).execute_pipeline(request)
    except (PipelineError, ValueError, LookupError) as exc:
        rprint(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    _print_run(run)
    if out:
        _write_output(out, _run_markdown(run), _to_plain(run))
        rprint(f"[cyan]Wrote output to {out}[/cyan]")
    elif run.content is not None:
        rprint(_run_markdown(run))

    if not run.success:
        raise typer.Exit(code=1)


@app.command("batch")
def batch_command(
    requests: List[Path] = typer.Argument(
        ...,
        help="One or more request JSON files or directories containing JSON files.",
    ),
    records: Optional[Path] = typer.Option(
        None, "--records", "-r", help="Directory of <source_type>.jsonl record files."
    ),
    outdir: Optional[Path] = typer.Option(
        None,
        "--outdir",
        "-o",
        help="Optional directory to write per-request outputs (.md or .json).",
    ),
    output_format: str = typer.Option(
        "md",
        "--format",
        "-f",
        help="Output format when writing files: md or json.",
        case_sensitive=False,
    ),
    concurrency: int = typer.Option(
        5,
        "--concurrency",
        "-c",
        help="Number of requests to process in parallel.",
    ),
    no_ai: bool = typer.Option(False, "--no-ai", help="Skip every AI step."),
):
    """
    Run multiple requests through the pipeline in parallel.
    """
    if concurrency < 1:
        raise typer.BadParameter("concurrency must be >= 1.")

    fmt = output_format.lower()
    if fmt not in {"md", "json"}:
        raise typer.BadParameter("format must be 'md' or 'json'.")

    paths = _collect_request_paths(requests)
    if not paths:
        raise typer.BadParameter("No JSON request files found.")

    if outdir:
        outdir.mkdir(parents=True, exist_ok=True)

    load_errors: dict[int, str] = {}
    loaded: list[tuple[int, ContentRequest]] = []
    for idx, path in enumerate(paths):
        try:
            loaded.append((idx, _load_request(path, no_ai=no_ai)))
        except Exception as exc:
            load_errors[idx] = str(exc)

    orchestrator = _build_orchestrator(records, no_ai=no_ai)
    batch = orchestrator.execute_batch_pipeline(
        [request for _, request in loaded], max_workers=concurrency
    )
    runs: dict[int, Any] = {}
    for (idx, _), item in zip(loaded, batch.items):
        runs[idx] = item

    failures = len(load_errors)
    for idx, path in enumerate(paths):
        if idx in load_errors:
            rprint(f"[red]Failed {path}: {load_errors[idx]}[/red]")
            continue
        item = runs[idx]
        if item.run is None:
            failures += 1
            rprint(f"[red]Failed {path}: {item.error}[/red]")
            continue
        if not item.run.success:
            failures += 1
        _print_run(item.run)

        if outdir:
            out_path = _batch_output_path(outdir, path, idx, fmt)
            _write_output(out_path, _run_markdown(item.run), _to_plain(item.run))
            rprint(f"[cyan]Wrote output to {out_path}[/cyan]")
        elif item.run.content is not None:
            rprint(f"[cyan]--- {path} ---[/cyan]")
            rprint(_run_markdown(item.run))

    rprint(
        f"[cyan]Batch complete: {len(paths) - failures} succeeded, {failures} failed.[/cyan]"
    )
    if failures:
        raise typer.Exit(code=1)


def _load_validation_target(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
        if "template_type" in data:
            return Template.model_validate(data)
        return data
    found = headings(text)
    title = found[0][1] if found else path.stem.replace("_", " ")
    return ValidationTarget(title=title, content=text, is_template="{{" in text)


@app.command("validate")
def validate_command(
    path: Path = typer.Argument(..., help="Markdown or JSON template/content file."),
    strict: bool = typer.Option(False, "--strict", help="Use the strict per-rule threshold."),
):
    """Score a template or content file against the validation rules."""
    try:
        result = TemplateValidator().validate(_load_validation_target(path), strict=strict)
    except (PipelineError, ValueError) as exc:
        rprint(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    for rule_id, rule in result.rule_results.items():
        colour = "green" if rule.passed else "red"
        rprint(f"[{colour}]{rule_id:<20} {rule.score:.2f}[/{colour}]")
        for issue in rule.issues:
            rprint(f"    - {issue}")
    for error in result.errors:
        rprint(f"[red]error: {error}[/red]")
    for warning in result.warnings:
        rprint(f"[yellow]warning: {warning}[/yellow]")

    if result.passed:
        rprint(f"[green]Passed with score {result.overall_score:.2f}[/green]")
    else:
        rprint(f"[red]{result.reason}[/red]")
        raise typer.Exit(code=1)


@app.command("tags")
def tags_command(
    path: Path = typer.Argument(..., help="Text file to classify."),
    threshold: Optional[float] = typer.Option(
        None, "--threshold", "-t", help="Minimum confidence (defaults to settings)."
    ),
    no_ai: bool = typer.Option(False, "--no-ai", help="Rule-based detection only."),
):
    """Detect competitive-intelligence tags in a text file."""
    provider = UnavailableProvider("Disabled with --no-ai.") if no_ai else resolve_provider()
    classifier = TagClassifier(for_classification(provider))
    result = classifier.detect_tags(
        path.read_text(encoding="utf-8"), use_ai=not no_ai, confidence_threshold=threshold
    )
    if not result.detected_tags:
        rprint("[yellow]No tags detected.[/yellow]")
        return
    for tag in result.detected_tags:
        rprint(f"[green]{tag:<24} {result.confidence_scores[tag]:.2f}[/green]")
    rprint(f"[cyan]Categories: {', '.join(result.categories) or '-'}[/cyan]")


@app.command("health")
def health_command(
    as_json: bool = typer.Option(False, "--json", help="Print the health check as JSON."),
):
    """Run one monitor cycle against a freshly built pipeline."""
    orchestrator = _build_orchestrator(None)
    monitor = PipelineMonitor(
        orchestrator.events,
        probes=orchestrator.component_probes(),
        settings=orchestrator.settings,
    )
    cycle = monitor.run_cycle()
    monitor.close()

    if as_json:
        typer.echo(json.dumps(_to_plain(cycle), ensure_ascii=False, indent=2))
    else:
        for name, component in cycle.health.components.items():
            colour = {"healthy": "green", "warning": "yellow"}.get(component.status, "red")
            rprint(
                f"[{colour}]{name:<14} {component.status:<10} "
                f"{component.response_time_ms:.1f} ms[/{colour}]"
            )
        rprint(
            f"[cyan]Overall: {cycle.health.overall_status} "
            f"({cycle.health.overall_score:.0%})[/cyan]"
        )
        for alert in cycle.alerts:
            rprint(f"[red]{alert.severity}: {alert.message}[/red]")
    if cycle.health.overall_status == "unhealthy":
        raise typer.Exit(code=1)


def main():
    app()


if __name__ == "__main__":
    main()
