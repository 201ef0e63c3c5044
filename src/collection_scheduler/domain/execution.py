from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PARTIAL = "partial"


class BaseExecutionRecord(BaseModel):
    """
    One historical outcome of a task run.
    """
    timestamp: datetime = Field(..., description="When the run finished")
    items_collected: int = Field(0, ge=0, description="Items returned by the data source across all entities")
    entities_processed: int = Field(0, ge=0, description="Entities found in the registry and fetched")
    duration_ms: int = Field(0, ge=0, description="Execution time in milliseconds")

    @property
    def error_message(self) -> Optional[str]:
        return getattr(self, "error", None)


class SuccessRecord(BaseExecutionRecord):
    status: Literal["success"] = "success"


class PartialRecord(BaseExecutionRecord):
    """
    Some entities were collected before a later entity's fetch failed.
    """
    status: Literal["partial"] = "partial"
    error: str = Field(..., description="Error that stopped the run")


class ErrorRecord(BaseExecutionRecord):
    status: Literal["error"] = "error"
    error: str = Field(..., description="Error that stopped the run")


ExecutionRecord = Annotated[
    Union[SuccessRecord, PartialRecord, ErrorRecord],
    Field(discriminator="status"),
]

execution_record_adapter = TypeAdapter(ExecutionRecord)
