import sys
from pathlib import Path
from typing import Annotated, Literal

from annotated_types import Ge
from pydantic import NonNegativeInt, PositiveInt
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FLOWEXEC_")

    working_root: Path = Path(".flowexec")
    """Directory holding the inbox/, outbox/ and scratch/ queue directories."""

    poll_interval_ms: PositiveInt = 200
    """ Initial (and minimum) delay between inbox scans."""

    poll_max_interval_ms: PositiveInt = 2000
    """ Upper bound of the inbox scan backoff."""

    result_poll_interval_ms: PositiveInt = 100
    """ Initial delay between outbox checks while waiting on a result."""

    stop_check_interval_ms: PositiveInt = 500
    """ Interval at which running jobs look for their stop marker."""

    default_timeout_ms: NonNegativeInt = 0
    """ Per-node wall clock timeout. 0 disables the timeout."""

    kill_grace_period_ms: NonNegativeInt = 2000
    """ Time given to a process group after SIGTERM before it is SIGKILLed."""

    max_steps: Annotated[int, Ge(1)] = 1000
    """ Traversal step budget shared by a whole flow execution."""

    max_visits_per_node: Annotated[int, Ge(1)] = 1000
    """ Number of times the traversal may step onto the same node."""

    watch_files: bool = True
    """ Wake the poll loops on filesystem events instead of only backing off."""

    python_executable: str = sys.executable
    node_executable: str = "node"
    java_executable: str = "java"
    groovy_jar: Path = Path("groovyExec.jar")
    powershell_executable: str = "powershell"
    cmd_executable: str = "cmd"
    bash_executable: str = "bash"

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"

    @property
    def inbox(self) -> Path:
        return self.working_root / "inbox"

    @property
    def outbox(self) -> Path:
        return self.working_root / "outbox"

    @property
    def scratch(self) -> Path:
        return self.working_root / "scratch"
