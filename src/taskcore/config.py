from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from taskcore.approval import AutoApproveSettings
from taskcore.backends.resilient import RetryPolicy

ProviderName = Literal["openai"]

CONFIG_FILE_NAME = "taskcore.toml"


@dataclass(slots=True)
class BackendConfig:
    provider: ProviderName = "openai"
    model: str = "gpt-4.1"
    fallback_model: str = ""
    base_url: str = ""
    system_prompt: str = "You are a careful software engineering agent."
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            backoff_seconds=self.retry_backoff_seconds,
            timeout_seconds=self.timeout_seconds,
        )


@dataclass(slots=True)
class RunnerConfig:
    max_steps: int = 20
    checkpoints: bool = True
    workflow_commands: bool = True
    augment_subtasks: bool = False
    command_timeout_seconds: float = 60.0
    subtask_poll_interval_seconds: float = 0.5


@dataclass(slots=True)
class ApprovalConfig:
    auto_approve: bool = False
    read: bool = True
    write: bool = False
    execute: bool = False
    mcp: bool = False
    mcp_tools: list[str] = field(default_factory=list)

    def settings(self) -> AutoApproveSettings:
        return AutoApproveSettings(
            enabled=self.auto_approve,
            read=self.read,
            write=self.write,
            execute=self.execute,
            mcp=self.mcp,
            mcp_tools=list(self.mcp_tools),
        )


@dataclass(slots=True)
class StoreConfig:
    path: str = ".taskcore"
    checkpoint_ref: str = "refs/taskcore/checkpoints"


@dataclass(slots=True)
class TaskcoreConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    @classmethod
    def default(cls) -> TaskcoreConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskcoreConfig:
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            runner=RunnerConfig(**data.get("runner", {})),
            approval=ApprovalConfig(**data.get("approval", {})),
            store=StoreConfig(**data.get("store", {})),
        )

    def to_dict(self) -> dict:
        return {
            "backend": asdict(self.backend),
            "runner": asdict(self.runner),
            "approval": asdict(self.approval),
            "store": asdict(self.store),
        }

    def store_path(self, workspace: Path) -> Path:
        path = Path(self.store.path)
        return path if path.is_absolute() else workspace / path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = repr(value)
        return rendered if "." in rendered or "e" in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskcoreConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("backend", "runner", "approval", "store"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskcoreConfig:
    if not path.exists():
        return TaskcoreConfig.default()
    return TaskcoreConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TaskcoreConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
