from datetime import datetime
from typing import Dict, Any, List, Optional

from pydantic import BaseModel, Field


class VersionedRecordModel(BaseModel):
    """Model for VersionedRecord API representation"""
    id: str = Field(..., description="Unique record identifier")
    version: int = Field(..., ge=1, description="Optimistic-lock version")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    updated_at: datetime = Field(..., description="Last mutation timestamp (UTC)")
    fields: Dict[str, Any] = Field(default_factory=dict, description="Business columns")


class ConflictDescriptorModel(BaseModel):
    """Model for ConflictDescriptor API representation"""
    conflict_id: str = Field(..., description="Conflict handle")
    table: str = Field(..., description="Table of the conflicting record")
    record_id: str = Field(..., description="ID of the conflicting record")
    local_data: Dict[str, Any] = Field(..., description="Caller's update plus expected version")
    remote_data: Optional[VersionedRecordModel] = Field(None, description="Currently stored record")
    timestamp: datetime = Field(..., description="Detection time")
    resolved: bool = Field(False, description="Whether a strategy has been applied")


class UpdateRequest(BaseModel):
    """Request model for an optimistic update"""
    updates: Dict[str, Any] = Field(..., description="Partial update of business fields")
    expected_version: int = Field(..., ge=1, description="Version the caller last read")


class CreateRequest(BaseModel):
    """Request model for a safe create"""
    data: Dict[str, Any] = Field(..., description="Business fields, optionally with an id")
    unique_fields: Optional[List[str]] = Field(None, description="Fields that must not collide")


class BatchOperationModel(BaseModel):
    """One item of a batch update"""
    table: str
    record_id: str
    updates: Dict[str, Any] = Field(default_factory=dict)
    expected_version: int = Field(..., ge=1)


class BatchUpdateRequest(BaseModel):
    """Request model for a non-transactional batch update"""
    operations: List[BatchOperationModel]


class ResolveConflictRequest(BaseModel):
    """Request model for resolving a conflict with a strategy"""
    local_data: Dict[str, Any]
    remote_data: VersionedRecordModel
    strategy: str = Field("manual", description="local, remote, merge or manual")


class ErrorResponse(BaseModel):
    """Body returned for every failed request"""
    error_code: str
    message: str
    conflict: Optional[ConflictDescriptorModel] = None
    fields: Optional[List[str]] = None
    key: Optional[str] = None
