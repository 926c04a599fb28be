"""Project configuration loaded from ``.plantree/config.yaml``.

Every key is optional; a missing file means defaults. CLI flags override the
``run`` section per invocation.
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

STATE_DIR_NAME = ".plantree"
CONFIG_FILENAME = "config.yaml"

DEFAULT_EXEC_TEMPLATE = (
    "cursor-agent --print --force --stream-partial-output --output-format stream-json "
    "'You are executing plan {plan_id} from {plan_path}.\n\n"
    "Your current task is {task_id}: {task_text}\n\n"
    "Complete as much of this plan as you can in this single run.\n"
    "If you finish items, update checklist markers in the plan file.\n"
    "If blocked, leave clear notes in the plan file.\n\n"
    "Open checklist items ({pending_count}):\n{open_tasks}\n\n"
    "Full plan text:\n{plan_text}'"
)

DEFAULT_RESUME_PROMPT = (
    "Session resumed after {idle_timeout_seconds}s of no output. "
    "First, identify why the previous run timed out or stalled. "
    "Then fix the root cause if possible (for example: hung command, missing timeout "
    "wrapper, blocked tool call, or bad test command). "
    "After that, continue from the current state. Do not restart the plan from scratch."
)


class ConfigError(Exception):
    """Invalid configuration file."""

    pass


class RunSettings(BaseModel):
    """Execution loop and supervisor settings (``run`` section)."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    owner: str = "agent:cursor-agent"
    watch: bool = False
    max_steps: int = Field(default=100, ge=0)
    max_minutes: float = Field(default=60, ge=0)
    sleep_seconds: float = Field(default=5, ge=0)
    idle_timeout_seconds: float = Field(default=600, gt=0)
    max_idle_restarts: int = Field(default=2, ge=0)
    heartbeat_seconds: float = Field(default=10, gt=0)
    max_consecutive_failures: int = Field(default=3, ge=0)  # 0 disables the breaker
    auto_complete_on_success: bool = False
    continue_flag: str = "--continue"
    resume_prompt: str = DEFAULT_RESUME_PROMPT
    exec_template: str = Field(default=DEFAULT_EXEC_TEMPLATE, alias="exec")
    # Literal resume command; None derives it from the exec template
    resume_exec: str | None = None

    def render_resume_prompt(self) -> str:
        seconds = f"{self.idle_timeout_seconds:g}"
        return self.resume_prompt.replace("{idle_timeout_seconds}", seconds)


class PlanTreeConfig(BaseModel):
    """Top-level project configuration."""

    model_config = {"extra": "forbid"}

    plans_dir: Path = Path("plans")
    archive_dir: Path = Path("plans/done")
    archive_completed_plans: bool = False
    lease_seconds: int = Field(default=1800, gt=0)
    lock_timeout_seconds: float = Field(default=30, gt=0)
    run: RunSettings = Field(default_factory=RunSettings)

    def resolve(self, root: Path) -> "PlanTreeConfig":
        """Return a copy with relative paths anchored at the workspace root."""
        return self.model_copy(
            update={
                "plans_dir": root / self.plans_dir,
                "archive_dir": root / self.archive_dir,
            }
        )


DEFAULT_CONFIG_YAML = """# plantree configuration
plans_dir: plans
archive_dir: plans/done
# Move fully checked plans into archive_dir after completion
archive_completed_plans: false
lease_seconds: 1800
lock_timeout_seconds: 30

run:
  owner: agent:cursor-agent
  max_steps: 100
  max_minutes: 60
  sleep_seconds: 5
  idle_timeout_seconds: 600
  max_idle_restarts: 2
  heartbeat_seconds: 10
  max_consecutive_failures: 3
  auto_complete_on_success: false
  continue_flag: --continue
  # Command used to resume a stalled session (defaults to the exec template
  # minus its placeholder arguments)
  # resume_exec: cursor-agent --print --force --output-format stream-json
"""


def state_dir(root: Path) -> Path:
    return root / STATE_DIR_NAME


def discover_root(start: Path | None = None) -> Path:
    """Find the workspace root: nearest ancestor with .plantree/ or plans/."""
    start = (start or Path.cwd()).resolve()
    for directory in (start, *start.parents):
        if (directory / STATE_DIR_NAME).is_dir() or (directory / "plans").is_dir():
            return directory
    return start


def load_config(root: Path) -> PlanTreeConfig:
    """Load ``.plantree/config.yaml`` (defaults when absent), paths resolved.

    Raises:
        ConfigError: If the file is not valid YAML or fails validation.
    """
    config_path = state_dir(root) / CONFIG_FILENAME
    data: dict = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")

    try:
        config = PlanTreeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
    return config.resolve(root)
