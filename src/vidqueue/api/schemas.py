"""Request bodies accepted by the HTTP API.

Unknown fields are rejected. Field-level rules (URL allow-list, job ID
format, option ranges) are enforced by the controller so that the error
messages match across transports.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProcessVideoRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    video_url: Optional[str] = Field(default=None, alias="videoUrl")
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")
    options: Optional[Dict[str, Any]] = Field(default=None)
    job_id: Optional[str] = Field(default=None, alias="jobId")


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    job_id: Optional[str] = Field(default=None, alias="jobId")
    reason: Optional[str] = Field(default=None)
