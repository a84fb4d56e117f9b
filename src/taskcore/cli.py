from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskcore.backends import ModelBackend, OpenAIBackend, ResilientBackend
from taskcore.config import CONFIG_FILE_NAME, TaskcoreConfig, load_config, save_config
from taskcore.exceptions import TaskcoreError
from taskcore.host import LocalHost
from taskcore.models import Task, TextPart, ToolPart
from taskcore.runner import StepContext, TaskRunner
from taskcore.store import TaskStore
from taskcore.subtask import AsyncSubtaskTracker
from taskcore.uri import RoleInfo, UriResolutionError, resolve_resource_uri

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: TaskcoreConfig
    store: TaskStore
    host: LocalHost
    runner: TaskRunner


def _resolve_config_path(workspace: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace / config_path
    return config_path.resolve()


def _record_backend_event(event: dict[str, Any]) -> None:
    logger.info("Backend event %s", json.dumps(event, ensure_ascii=False, sort_keys=True))


def _build_backend(config: TaskcoreConfig, workspace: Path) -> ModelBackend:
    _ = workspace
    base_url = config.backend.base_url or None
    primary = OpenAIBackend(
        model=config.backend.model,
        system_prompt=config.backend.system_prompt,
        base_url=base_url,
    )
    fallback = None
    if config.backend.fallback_model and config.backend.fallback_model != config.backend.model:
        fallback = OpenAIBackend(
            model=config.backend.fallback_model,
            system_prompt=config.backend.system_prompt,
            base_url=base_url,
        )
    return ResilientBackend(
        primary_name=config.backend.model,
        primary_backend=primary,
        fallback_name=config.backend.fallback_model or None,
        fallback_backend=fallback,
        retry_policy=config.backend.retry_policy(),
        event_hook=_record_backend_event,
    )


def _load_runtime(workspace: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store = TaskStore(config.store_path(workspace))
    host = LocalHost(
        workspace,
        command_timeout_seconds=config.runner.command_timeout_seconds,
        checkpoint_ref=config.store.checkpoint_ref,
        excluded_paths=[config.store.path] if not Path(config.store.path).is_absolute() else [],
    )
    runner = TaskRunner(
        store,
        _build_backend(config, workspace),
        host,
        workspace=workspace,
        max_steps=config.runner.max_steps,
        checkpoints=config.runner.checkpoints,
        workflow_commands=config.runner.workflow_commands,
        augment_subtasks=config.runner.augment_subtasks,
        tracker=AsyncSubtaskTracker(
            store, poll_interval_seconds=config.runner.subtask_poll_interval_seconds
        ),
    )
    return Runtime(
        workspace=workspace,
        config_path=config_path,
        config=config,
        store=store,
        host=host,
        runner=runner,
    )


def _require_task(runtime: Runtime, task_id: str) -> Task:
    task = runtime.store.query_task(task_id)
    if task is None:
        raise click.ClickException(f"Task not found: {task_id}")
    return task


def _last_assistant_text(runtime: Runtime, task_id: str) -> str:
    for message in reversed(runtime.store.query_messages(task_id)):
        if message.role != "assistant":
            continue
        for part in reversed(message.parts):
            if isinstance(part, ToolPart) and part.tool_name == "attemptCompletion":
                return str((part.input or {}).get("result", ""))
            if isinstance(part, TextPart) and part.text.strip():
                return part.text.strip()
    return ""


async def _approve_all(tools: list[ToolPart]) -> bool:
    _ = tools
    return True


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Task execution core CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--model", default=None)
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def init_command(model: str | None, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    config = load_config(config_path)
    if model:
        config.backend.model = model
    save_config(config_path, config)

    store = TaskStore(config.store_path(workspace))

    click.echo(f"Initialized taskcore in {workspace}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Model: {config.backend.model}")
    click.echo(f"Store: {store.root}")


@cli.command("run")
@click.argument("prompt", required=False)
@click.option("--task", "task_id", default=None, help="Continue an existing task.")
@click.option("--role", default=None, help="Agent role of a new task, e.g. planner.")
@click.option("--max-steps", type=int, default=None)
@click.option("--approve", is_flag=True, default=False, help="Approve every tool call.")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def run_command(
    prompt: str | None,
    task_id: str | None,
    role: str | None,
    max_steps: int | None,
    approve: bool,
    config_value: str,
) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))

    if task_id:
        task = _require_task(runtime, task_id)
        if prompt:
            runtime.runner.add_user_message(task.id, prompt)
    elif not prompt:
        raise click.ClickException("A prompt is required to start a new task.")
    else:
        task = runtime.runner.create_task(prompt, role=role)

    context = StepContext(
        role=RoleInfo(task.role) if task.role else None,
        settings=runtime.config.approval.settings(),
        approver=_approve_all if approve else None,
    )

    async def _run() -> Task:
        result = await runtime.runner.run(task.id, context, max_steps)
        await runtime.runner.wait_for_background(abort_signal=context.abort_signal)
        return result

    try:
        task = asyncio.run(_run())
    except TaskcoreError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Task: {task.id}")
    click.echo(f"Status: {task.status}")
    if task.error is not None:
        click.echo(f"Error: {task.error.message}")
    if task.status == "pending-tool":
        click.echo(
            f"Awaiting tool approval. Continue with: taskcore run --task {task.id} --approve"
        )
    text = _last_assistant_text(runtime, task.id)
    if text:
        click.echo(text)


@cli.command("tasks")
@click.option("--all", "include_subtasks", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def tasks_command(include_subtasks: bool, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    tasks = runtime.store.list_tasks(include_subtasks=include_subtasks)
    if not tasks:
        click.echo("No tasks found.")
        return
    for task in tasks:
        click.echo(f"{task.id} {task.status:<13} {task.title}")


@cli.command("status")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def status_command(task_id: str, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    task = _require_task(runtime, task_id)
    payload = task.to_dict()
    payload["canRetry"] = TaskRunner.can_retry(task)
    payload["subtasks"] = [child.id for child in runtime.store.query_subtasks(task_id)]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("output")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def output_command(task_id: str, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    output = runtime.runner.tracker.read_task_output(task_id)
    if output is None:
        raise click.ClickException(f"Task not found: {task_id}")
    payload = {
        "output": output.output,
        "status": output.status,
        "isTruncated": output.is_truncated,
    }
    if output.error:
        payload["error"] = output.error
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("resolve-uri")
@click.argument("uri")
@click.option("--task", "task_id", required=True)
@click.option("--parent", "parent_id", default=None)
@click.option("--role", default=None)
def resolve_uri_command(uri: str, task_id: str, parent_id: str | None, role: str | None) -> None:
    try:
        resolved = resolve_resource_uri(
            uri,
            task_id,
            RoleInfo(role) if role else None,
            parent_id=parent_id,
        )
    except UriResolutionError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(resolved)


@cli.command("rollback")
@click.argument("task_id")
@click.option("--checkpoint", "commit", default=None, help="Checkpoint commit to restore.")
@click.option("--config", "config_value", default=CONFIG_FILE_NAME, show_default=True)
def rollback_command(task_id: str, commit: str | None, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    runtime = _load_runtime(workspace, _resolve_config_path(workspace, config_value))
    task = _require_task(runtime, task_id)
    target = commit or task.last_checkpoint_hash
    if not target:
        raise click.ClickException(f"No clean checkpoint recorded for task {task_id}.")
    try:
        asyncio.run(runtime.host.restore_checkpoint(target))
    except TaskcoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restored checkpoint {target[:10]}")
