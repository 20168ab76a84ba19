from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

TERMINATED_BY_USER = "Process terminated by user"


class Job(BaseModel):
    id: str
    code: str = ""
    code_file_path: str | None = Field(default=None, alias="codeFilePath")
    type: str | None = None
    input: Any = None
    dont_wait_for_output: bool = Field(default=False, alias="dontWaitForOutput")
    base_path: str | None = Field(default=None, alias="basePath")
    timeout: int = 0
    flow_path: list[str] = Field(default_factory=list, alias="flowPath")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # job files written by other producers may carry nulls for these
    @field_validator(
        "code", "timeout", "dont_wait_for_output", "flow_path", mode="before"
    )
    @classmethod
    def _drop_null(cls, value: Any, info: ValidationInfo) -> Any:
        if value is not None:
            return value

        return cls.model_fields[info.field_name].get_default(call_default_factory=True)

    @classmethod
    def create(cls, **fields: Any) -> "Job":
        return cls(id=f"job-{uuid4().hex}", **fields)


class Result(BaseModel):
    id: str
    output: Any = None
    log: str | None = None
    error: str | None = None
    dont_wait_for_output: bool = Field(default=False, alias="dontWaitForOutput")
    execution_time: int | None = Field(default=None, alias="executionTime")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @classmethod
    def terminated(cls, job: Job) -> "Result":
        return cls(
            id=job.id,
            log=TERMINATED_BY_USER,
            error=TERMINATED_BY_USER,
            dont_wait_for_output=job.dont_wait_for_output,
        )

    @classmethod
    def timed_out(cls, job_id: str, timeout_ms: int) -> "Result":
        return cls(
            id=job_id,
            log="Process terminated due to timeout",
            error=f"Process terminated after {timeout_ms / 1000:g} seconds timeout",
        )

    @property
    def was_terminated(self) -> bool:
        return self.error == TERMINATED_BY_USER
