import logging
import shutil
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, File as FastAPIFile, Request, UploadFile

from filevault.core.config import Settings, get_settings
from filevault.core.security import Principal, get_principal, require_roles
from filevault.routers.deps import get_file_manager, get_folder_manager, get_storage
from filevault.schemas import ApprovalUpdate, FileOut, RenameRequest
from filevault.services import approval
from filevault.services.delivery import prepare_delivery
from filevault.services.files import FileManager, StagedUpload
from filevault.services.folders import FolderManager
from filevault.services.storage import StorageAdapter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/files", tags=["files"])


def file_out(record, duplicate: bool = False) -> dict:
    data = FileOut.model_validate(record).model_dump(mode="json")
    data["is_duplicate"] = duplicate
    return data


def stage_upload(upload: UploadFile, settings: Settings) -> StagedUpload:
    """Copy an incoming upload into the staging area, outside the storage root."""
    settings.staging_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(upload.filename or "").suffix
    staged = settings.staging_dir / f"{uuid.uuid4().hex}{suffix}"
    with open(staged, "wb") as out:
        shutil.copyfileobj(upload.file, out)
    return StagedUpload(
        path=staged,
        original_name=upload.filename or "",
        mimetype=upload.content_type or "application/octet-stream",
        size=staged.stat().st_size,
    )


# --- upload one or more files into a folder ---
@router.post("/folders/{folder_id}", status_code=201)
def upload_files(
    folder_id: int,
    uploads: List[UploadFile] = FastAPIFile(..., alias="files"),
    principal: Principal = Depends(get_principal),
    folders: FolderManager = Depends(get_folder_manager),
    files: FileManager = Depends(get_file_manager),
    settings: Settings = Depends(get_settings),
):
    folder = folders.get(folder_id)
    folders.require_access(folder, principal, write=True)
    folders.heal(folder)

    staged: List[StagedUpload] = []
    try:
        for upload in uploads:
            staged.append(stage_upload(upload, settings))
        batch = files.upload_many(folder, staged, principal)
    finally:
        # leftovers are items that were skipped or failed
        for item in staged:
            item.path.unlink(missing_ok=True)

    logger.info(
        f"Upload to folder {folder_id} by user {principal.id}: "
        f"{len(batch.saved)} saved, {len(batch.duplicates)} duplicates, {len(batch.failures)} skipped"
    )
    data = [file_out(o.file, o.duplicate) for o in batch.outcomes]
    return {
        "success": True,
        "count": len(data),
        "data": data,
        "skipped": [{"filename": name, **err.to_dict()} for name, err in batch.failures],
        "approval_info": {
            "auto_approved": principal.is_reviewer,
            "status": approval.initial_state(principal).status,
        },
    }


# --- list files by approval status (reviewers) ---
@router.get("")
def list_files(
    status: str = "all",
    search: Optional[str] = None,
    principal: Principal = Depends(require_roles("admin", "sub-admin")),
    files: FileManager = Depends(get_file_manager),
):
    result = files.list_by_status(status, search=search)
    return {"success": True, "count": len(result), "data": [file_out(f) for f in result]}


# --- file info ---
@router.get("/{file_id}")
def get_file_info(
    file_id: int,
    principal: Principal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
    storage: StorageAdapter = Depends(get_storage),
):
    record = files.get(file_id)
    files.require_view(record, principal)
    data = file_out(record)
    data["file_exists"] = storage.exists(record.path)
    return {"success": True, "data": data}


# --- approve / disapprove ---
@router.patch("/{file_id}/approval")
def set_file_approval(
    file_id: int,
    body: ApprovalUpdate,
    principal: Principal = Depends(require_roles("admin", "sub-admin")),
    files: FileManager = Depends(get_file_manager),
):
    record = files.set_approval(file_id, body.status, principal, reason=body.reason)
    return {"success": True, "message": f"File {body.status} successfully", "data": file_out(record)}


# --- download / preview ---
@router.get("/{file_id}/download")
def download_file(
    file_id: int,
    request: Request,
    preview: bool = False,
    principal: Principal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
    storage: StorageAdapter = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    record = files.get(file_id)
    files.require_view(record, principal)

    response = prepare_delivery(
        record,
        storage,
        settings,
        range_header=request.headers.get("range"),
        if_none_match=request.headers.get("if-none-match"),
        preview=preview,
        is_disconnected=request.is_disconnected,
    )
    if response.status_code in (200, 206):
        files.record_download(record)
    return response


# --- rename a file ---
@router.patch("/{file_id}/rename")
def rename_file(
    file_id: int,
    body: RenameRequest,
    principal: Principal = Depends(get_principal),
    folders: FolderManager = Depends(get_folder_manager),
    files: FileManager = Depends(get_file_manager),
):
    record = files.get(file_id)
    files.require_modify(record, principal)
    folders.heal(record.folder)
    record = files.rename(file_id, body.new_name)
    return {"success": True, "data": file_out(record)}


# --- delete a file ---
@router.delete("/{file_id}")
def delete_file(
    file_id: int,
    principal: Principal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    files.require_modify(files.get(file_id), principal)
    files.delete(file_id)
    return {"success": True, "message": "File deleted successfully", "data": {"id": file_id}}


# --- version history ---
@router.get("/{file_id}/versions")
def list_versions(
    file_id: int,
    principal: Principal = Depends(get_principal),
    files: FileManager = Depends(get_file_manager),
):
    files.require_view(files.get(file_id), principal)
    versions = [v for v in files.find_versions(file_id) if approval.can_view(v, principal)]
    return {"success": True, "count": len(versions), "data": [file_out(v) for v in versions]}


# --- restore an older version as the newest one ---
@router.post("/{file_id}/restore", status_code=201)
def restore_version(
    file_id: int,
    principal: Principal = Depends(get_principal),
    folders: FolderManager = Depends(get_folder_manager),
    files: FileManager = Depends(get_file_manager),
):
    record = files.get(file_id)
    files.require_modify(record, principal)
    folders.heal(record.folder)
    record = files.restore(file_id, principal)
    return {"success": True, "message": "Version restored successfully", "data": file_out(record)}
