# User value: This file validates what clients and the processor send before any job or credit is touched.
from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional


class SubmitJobRequest(BaseModel):
    # User value: describes the document to analyse; the file itself is already stored upstream.
    input_name: str = Field(..., min_length=1, max_length=512)
    size_bytes: int = Field(default=0, ge=0)
    reference: Optional[str] = Field(default=None, max_length=2048)
    job_description: str = Field(default="", max_length=20000)


class ProcessorResultRequest(BaseModel):
    # User value: the processor reports one terminal outcome per job.
    status: Literal["completed", "failed"]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = Field(default=None, max_length=4000)


class SetBalanceRequest(BaseModel):
    credits: int = Field(..., ge=0)
    free_tier_used: bool = False
