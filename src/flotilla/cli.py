"""CLI entrypoint for flotilla."""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click

from flotilla.config.loader import load_config
from flotilla.coordinator.spawner import AgentSpawner
from flotilla.engine import Engine
from flotilla.errors import FlotillaError
from flotilla.paths import find_project_root
from flotilla.sandbox.policy import AgentSandboxContext
from flotilla.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _engine(ctx: click.Context) -> Engine:
    obj = ctx.ensure_object(dict)
    if "engine" not in obj:
        try:
            config = load_config(obj["project_root"], overrides=obj["overrides"])
            obj["engine"] = Engine.from_config(config)
        except FlotillaError as exc:
            raise click.ClickException(str(exc)) from exc
    return obj["engine"]


def _parse_overrides(values: tuple[str, ...]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--set")
        try:
            overrides[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            overrides[key.strip()] = raw
    return overrides


@click.group()
@click.option("--project-root", type=click.Path(file_okay=False, path_type=Path), default=None, help="Project root (default: nearest .flotilla/ or .git/)")
@click.option("--set", "overrides", multiple=True, metavar="KEY=VALUE", help="Override a config key, e.g. agent.sandbox=true")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
@click.pass_context
def main(ctx: click.Context, project_root: Path | None, overrides: tuple[str, ...], debug: bool, json_logs: bool) -> None:
    """Flotilla agent execution engine."""
    setup_logging(debug=debug, json_output=json_logs)
    obj = ctx.ensure_object(dict)
    obj["project_root"] = project_root or find_project_root() or Path.cwd()
    obj["overrides"] = _parse_overrides(overrides)


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


@main.command("claim")
@click.argument("task_id")
@click.option("--operation", default="manual", help="Label recorded in the claim marker")
@click.pass_context
def claim_command(ctx: click.Context, task_id: str, operation: str) -> None:
    result = _engine(ctx).claims.claim(task_id, operation)
    _echo_json(result.to_dict())


@main.command("release")
@click.argument("task_id")
@click.pass_context
def release_command(ctx: click.Context, task_id: str) -> None:
    result = _engine(ctx).claims.release(task_id)
    _echo_json(result.to_dict())


@main.command("claims")
@click.pass_context
def claims_command(ctx: click.Context) -> None:
    """List claims and whether each holder pid is still alive."""
    registry = _engine(ctx).claims
    for claim in registry.list_claims():
        alive = registry.holder_alive(claim["taskId"])
        state = "alive" if alive else ("dead" if alive is False else "unknown")
        click.echo(f"{claim['taskId']}  {claim.get('operation', '?')}  pid={claim.get('pid')} ({state})  since {claim.get('started_at')}")


# ---------------------------------------------------------------------------
# Worktrees
# ---------------------------------------------------------------------------


@main.group("worktree")
def worktree_group() -> None:
    """Per-task git worktrees."""


@worktree_group.command("create")
@click.argument("task_id")
@click.option("--base", "base_branch", default=None, help="Base branch (default: current branch)")
@click.pass_context
def worktree_create(ctx: click.Context, task_id: str, base_branch: str | None) -> None:
    result = _engine(ctx).worktrees.create(task_id, base_branch)
    _echo_json(result.to_dict())
    if not result.success:
        ctx.exit(1)


@worktree_group.command("remove")
@click.argument("task_id")
@click.option("--force", is_flag=True, help="Remove even with uncommitted changes; force-delete the branch")
@click.option("--keep-branch", is_flag=True, help="Keep the task branch")
@click.pass_context
def worktree_remove(ctx: click.Context, task_id: str, force: bool, keep_branch: bool) -> None:
    result = _engine(ctx).worktrees.remove(task_id, force=force, keep_branch=keep_branch)
    _echo_json(result.to_dict())
    if not result.success:
        ctx.exit(1)


@worktree_group.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include worktrees not bound to a task")
@click.pass_context
def worktree_list(ctx: click.Context, show_all: bool) -> None:
    manager = _engine(ctx).worktrees
    try:
        infos = manager.list() if show_all else manager.list_agent_worktrees()
    except FlotillaError as exc:
        raise click.ClickException(str(exc)) from exc
    for info in infos:
        click.echo(f"{info.task_id or '-':8} {info.branch or '(detached)':24} {info.path}")


@worktree_group.command("status")
@click.argument("task_id")
@click.pass_context
def worktree_status(ctx: click.Context, task_id: str) -> None:
    try:
        status = _engine(ctx).worktrees.status(task_id)
    except FlotillaError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(asdict(status))


@worktree_group.command("prune")
@click.pass_context
def worktree_prune(ctx: click.Context) -> None:
    try:
        _engine(ctx).worktrees.prune()
    except FlotillaError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Pruned stale worktree entries")


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


@main.command("conflicts")
@click.option("--task", "task_id", default=None, help="Only check whether this task can merge cleanly")
@click.pass_context
def conflicts_command(ctx: click.Context, task_id: str | None) -> None:
    detector = _engine(ctx).conflict_detector()
    if task_id:
        ok, overlaps = detector.can_merge_without_conflict(task_id)
        _echo_json({"taskId": task_id, "canMerge": ok, "conflicts": [c.to_dict() for c in overlaps]})
        return
    matrix = detector.build_conflict_matrix()
    _echo_json({**matrix.to_dict(), "suggestedOrder": detector.suggest_merge_order(matrix)})


# ---------------------------------------------------------------------------
# Sandbox / service
# ---------------------------------------------------------------------------


@main.group("sandbox")
def sandbox_group() -> None:
    """Sandbox policies."""


@sandbox_group.command("policy")
@click.argument("task_id")
@click.option("--strict/--no-strict", default=None, help="Override sandbox.strict")
@click.option("--write", "write_file", is_flag=True, help="Also write it to the agent directory")
@click.pass_context
def sandbox_policy(ctx: click.Context, task_id: str, strict: bool | None, write_file: bool) -> None:
    engine = _engine(ctx)
    try:
        builder = engine.policy_builder()
    except FlotillaError as exc:
        raise click.ClickException(str(exc)) from exc
    status = engine.service.status()
    context = AgentSandboxContext(
        task_id=task_id,
        worktree_path=engine.worktrees.worktree_path(task_id),
        layout=engine.layout,
        mcp_socket=status.socket,
        external_mcp=engine.bridge.external,
        extra_write_paths=list(engine.config.sandbox.extra_write_paths),
    )
    policy = builder.build(context, strict=engine.config.sandbox.strict if strict is None else strict)
    if write_file:
        path = builder.write(policy, context.agent_paths.policy_file)
        click.echo(f"Wrote {path}", err=True)
    _echo_json(policy.to_dict())


@main.group("service")
def service_group() -> None:
    """Coordination service liveness."""


@service_group.command("status")
@click.pass_context
def service_status(ctx: click.Context) -> None:
    engine = _engine(ctx)
    status = engine.service.status()
    if not status.running:
        click.echo(f"not running; start it with: {engine.service.start_hint}")
        ctx.exit(1)
    endpoint = status.socket if status.mode == "socket" else f"127.0.0.1:{status.port}"
    click.echo(f"running pid={status.pid} mode={status.mode} endpoint={endpoint}")


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@main.group("agent")
def agent_group() -> None:
    """Spawn and inspect agents."""


@agent_group.command("spawn")
@click.argument("task_id")
@click.option("--prompt", default=None, help="Prompt text (default: read from stdin)")
@click.option("--prompt-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
@click.option("--sandbox/--no-sandbox", default=None, help="Override agent.sandbox")
@click.option("--base", "base_branch", default=None, help="Base branch for a new worktree")
@click.option("--operation", default="agent", help="Label recorded in the claim marker")
@click.pass_context
def agent_spawn(
    ctx: click.Context,
    task_id: str,
    prompt: str | None,
    prompt_file: Path | None,
    sandbox: bool | None,
    base_branch: str | None,
    operation: str,
) -> None:
    """Run one agent for TASK_ID and wait for it to exit."""
    if prompt_file is not None:
        prompt = prompt_file.read_text(encoding="utf-8")
    elif prompt is None:
        prompt = sys.stdin.read()
    spawner = AgentSpawner(_engine(ctx))

    async def _run() -> int:
        run = await spawner.spawn(task_id, prompt, operation=operation, sandbox=sandbox, base_branch=base_branch)
        logger.info("agent_spawned", task_id=task_id, pid=run.process.pid, log_file=run.record.log_file)
        info = await run.wait()
        logger.info("agent_exited", task_id=task_id, returncode=info.returncode, reason=info.reason)
        click.echo(f"{task_id} exited: code={info.returncode} signal={info.signal} reason={info.reason} after {info.duration:.1f}s")
        return 0 if info.success and not info.killed else 1

    try:
        code = asyncio.run(_run())
    except FlotillaError as exc:
        logger.error("agent_spawn_failed", task_id=task_id, category=str(exc.category), error=str(exc))
        raise click.ClickException(str(exc)) from exc
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="TASK_ID") from exc
    ctx.exit(code)


@agent_group.command("list")
@click.option("--active", "active_only", is_flag=True, help="Only dispatched/running agents")
@click.pass_context
def agent_list(ctx: click.Context, active_only: bool) -> None:
    repo = _engine(ctx).agents
    records = repo.active() if active_only else repo.all()
    if not records:
        click.echo("No agents")
        return
    for record in records:
        click.echo(f"{record.task_id or record.task_num:8} {record.status:10} pid={record.pid} since {record.spawned_at}")


if __name__ == "__main__":
    main()
