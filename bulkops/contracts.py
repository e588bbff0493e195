"""
bulkops/contracts.py

Request/response models for the control surface (HTTP API and CLI).

A BulkRequest names what to run and against which ids; a BulkResponse is
the aggregate the popup used to show: ids per bucket plus the failure
messages.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bulkops.executor.actions import InjectionRule
from bulkops.executor.models import BatchRun


class BulkRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # None means "use the targets currently in the store"
    target_ids: Optional[List[str]] = None

    # Exactly one of feature / use_template
    feature: Optional[str] = None
    use_template: bool = False

    payload_input: Dict[str, Any] = Field(default_factory=dict)
    method: Optional[str] = None
    query_param: Optional[str] = None

    # Template injection
    injection: Optional[InjectionRule] = None
    injection_field: Optional[str] = None
    placeholder: Optional[str] = None

    batch_size: Optional[int] = Field(default=None, ge=1, le=50)
    inter_batch_delay_ms: Optional[int] = Field(default=None, ge=0, le=60000)

    @field_validator("target_ids")
    @classmethod
    def strip_ids(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return [i.strip() for i in v if i and i.strip()]

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    @model_validator(mode="after")
    def one_action(self) -> "BulkRequest":
        if bool(self.feature) == bool(self.use_template):
            raise ValueError("Specify exactly one of 'feature' or 'use_template'")
        if self.use_template and self.injection is None:
            raise ValueError("Template runs need an 'injection' rule (path, query or body)")
        return self


class FailureEntry(BaseModel):
    target_id: str
    message: Optional[str] = None


class BulkResponse(BaseModel):
    successful: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failures: List[FailureEntry] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: BatchRun) -> "BulkResponse":
        return cls.model_validate(run.summary())


class RecordingRequest(BaseModel):
    active: bool = True
