from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr


class TaskSubmitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: StrictStr = Field(..., alias="taskId", min_length=1)
    # Any JSON value, null included; presence is checked before validation.
    payload: Any = None


class TaskSubmitResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    task_id: str = Field(..., alias="taskId")
    message_id: str = Field(..., alias="messageId")
    timestamp: str


class BadRequestResponse(BaseModel):
    error: str = "Bad Request"
    reason: str
    message: str


class ServiceUnavailableResponse(BaseModel):
    error: str = "Service Unavailable"
    reason: str
