# filevault/schemas.py
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AccessEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    permission: str
    granted_at: Optional[datetime] = None


class FolderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    path: str
    parent_id: Optional[int] = None
    depth: int
    is_system_folder: bool
    created_by_id: int
    metadata: Dict[str, str] = Field(default_factory=dict, validation_alias="meta")
    access: List[AccessEntryOut] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    filename: str
    original_filename: str
    path: str
    size: int
    size_formatted: str
    mimetype: str
    extension: str
    description: Optional[str] = None
    tags: List[str] = []
    folder_id: int
    owner_id: int
    uploaded_by_id: int

    version: int
    is_current_version: bool
    previous_versions: List[int] = []
    original_file_id: Optional[int] = None

    file_hash: str
    checksum_algorithm: str

    approval_status: str
    approved_by_id: Optional[int] = None
    approved_at: Optional[datetime] = None
    rejected_by_id: Optional[int] = None
    rejected_at: Optional[datetime] = None
    disapproval_reason: Optional[str] = None

    download_count: int
    can_preview: bool
    uploaded_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    is_duplicate: bool = False


# --- request bodies ---

class FolderCreate(BaseModel):
    name: str
    parent_folder: Optional[int] = None
    metadata: Optional[Dict[str, str]] = None


class FolderUpdate(BaseModel):
    """``parent_folder`` absent keeps the parent; explicit null moves to root."""

    name: Optional[str] = None
    parent_folder: Optional[int] = None
    metadata: Optional[Dict[str, str]] = None


class AccessGrant(BaseModel):
    user_id: int
    permission: str


class ApprovalUpdate(BaseModel):
    status: str
    reason: Optional[str] = None


class RenameRequest(BaseModel):
    new_name: str
