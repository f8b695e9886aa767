# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from gatedci import settings
from gatedci.dag import topo_order
from gatedci.errors import ConfigError
from gatedci.gate import ConcurrencyGate, RedisConcurrencyGate
from gatedci.git_facts.git import current_ref, repo_name
from gatedci.matrix import count
from gatedci.model import PUSH
from gatedci.pipeline import plan_instances, run_pipeline
from gatedci.policy import stage_fail_fast
from gatedci.runner import ShellExecutor, load_pipeline
from gatedci.triggers import classify, event_from_ref
from gatedci.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def find_pipeline_files() -> list[Path]:
    """Pipeline files in the current directory: the default name first, then *_pipeline.py."""
    current_dir = Path(".")
    default = current_dir / settings.PIPELINE_FILE
    found = [default] if default.exists() else []
    for path in sorted(current_dir.glob("*_pipeline.py")):
        if path.resolve() != default.resolve():
            found.append(path)
    return found


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline file from the argument or by discovery.

    Exits with EXIT_CONFIG when nothing (or more than one candidate) is found.
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and path.suffix != ".py":
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  gatedci run --pipeline my_pipeline.py",
            )
            sys.exit(EXIT_CONFIG)
        return path

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", f"  {settings.PIPELINE_FILE}", "  *_pipeline.py"],
            suggestion="Create gatedci_pipeline.py or pass --pipeline.",
        )
        sys.exit(EXIT_CONFIG)
    if len(files) > 1 and files[0].name != settings.PIPELINE_FILE:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion="gatedci run --pipeline <file>",
        )
        sys.exit(EXIT_CONFIG)
    return files[0]


def _resolve_ref(ref: str | None) -> str:
    if ref:
        return ref
    try:
        return current_ref()
    except (subprocess.CalledProcessError, FileNotFoundError):
        get_console().print_error(
            "Could not determine git ref",
            "No --ref given and the current directory is not a git checkout.",
            suggestion="Pass the ref explicitly:\n  gatedci run --ref refs/heads/main",
        )
        sys.exit(EXIT_CONFIG)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """gatedci: matrix CI pipelines with fail-fast policy and gated releases."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file path")
@click.option(
    "--event",
    "trigger_kind",
    default=PUSH,
    show_default=True,
    help="What triggered the run (push, pull_request, ...)",
)
@click.option("--ref", default=None, help="Git ref (defaults to the checked out ref)")
@click.option("--run-id", default=None, help="Identifier used for concurrency groups")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Parallel job instances per stage")
@click.option("--repo-root", default=".", show_default=True, help="Directory step commands run in")
@click.option(
    "--gate-timeout",
    default=settings.GATE_TIMEOUT,
    type=float,
    help="Seconds to wait for a concurrency group, 0 to not wait (default: forever)",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the outcome as JSON")
@click.pass_context
def run(ctx, pipeline_file, trigger_kind, ref, run_id, workers, repo_root, gate_timeout, as_json):
    """Run a pipeline for one trigger."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    event = event_from_ref(trigger_kind, _resolve_ref(ref))

    try:
        pipeline = load_pipeline(path)
        gate = (
            RedisConcurrencyGate.from_url(settings.REDIS_URL, prefix=settings.GATE_PREFIX)
            if settings.REDIS_URL
            else ConcurrencyGate()
        )
        console.print_debug(f"repository: {repo_name(repo_root)}")
        result = run_pipeline(
            pipeline,
            event,
            executor=ShellExecutor(repo_root),
            gate=gate,
            run_id=run_id,
            max_workers=workers,
            gate_timeout=gate_timeout,
            console=console,
        )
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(result)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    sys.exit(EXIT_OK if result.succeeded else EXIT_FAILED)


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file path")
@click.option("--event", "trigger_kind", default=PUSH, show_default=True)
@click.option("--ref", default=None, help="Git ref (defaults to the checked out ref)")
def plan(pipeline_file, trigger_kind, ref):
    """Show what a run would do for a trigger, without running anything."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    event = event_from_ref(trigger_kind, _resolve_ref(ref))

    try:
        pipeline = load_pipeline(path)
        order = topo_order(pipeline.stages)
        plans = {s.name: plan_instances(s) for s in pipeline.stages}
    except ConfigError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)

    c = classify(event, pipeline.trunk)
    console.print_header(f"PLAN: {pipeline.name}")
    console.print_info(f"Trigger: {event.trigger_kind} {event.ref}")
    console.print_info(
        f"pull request={c.is_pull_request} trunk push={c.is_trunk_push} tag={c.is_tag}"
    )
    for name in order:
        stage = pipeline.stage(name)
        flags = []
        if stage.needs:
            flags.append(f"needs {', '.join(stage.needs)}")
        if stage.concurrency_group:
            flags.append(f"group {stage.concurrency_group}")
        if stage.is_matrix:
            flags.append(f"matrix of {count(stage.matrix)}")
            flags.append("fail-fast" if stage_fail_fast(stage, event, pipeline.trunk) else "run to completion")
        if not stage.should_run(event, pipeline.trunk):
            flags.append("skipped: run condition not met")
        console.print_info(f"  {name} ({'; '.join(flags) or 'always'})")
        for inst in plans[name]:
            console.print_info(f"    - {inst.label}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
def serve(host, port):
    """Run the status service (POST /runs, GET /runs/{id})."""
    import uvicorn

    uvicorn.run("gatedci.cloud.app:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    cli()
