from typing import Optional

from fastapi import APIRouter, Depends

from filevault.core.errors import AccessDeniedError, InvalidError
from filevault.core.security import Principal, get_principal, require_roles
from filevault.routers.deps import get_file_manager, get_folder_manager
from filevault.schemas import AccessGrant, FileOut, FolderCreate, FolderOut, FolderUpdate
from filevault.services.files import FileManager
from filevault.services.folders import UNSET, FolderManager

router = APIRouter(prefix="/api/folders", tags=["folders"])


def folder_out(folder) -> dict:
    return FolderOut.model_validate(folder).model_dump(mode="json")


# --- create a folder ---
@router.post("", status_code=201)
def create_folder(
    body: FolderCreate,
    principal: Principal = Depends(require_roles("admin")),
    folders: FolderManager = Depends(get_folder_manager),
):
    folder = folders.create(
        body.name, principal, parent_id=body.parent_folder, metadata=body.metadata
    )
    return {"success": True, "data": folder_out(folder)}


# --- list folders (with parent filtering + access control) ---
@router.get("")
def list_folders(
    parent: Optional[str] = None,
    principal: Principal = Depends(get_principal),
    folders: FolderManager = Depends(get_folder_manager),
):
    parent_id = UNSET
    if parent is not None:
        if parent == "null":
            parent_id = None
        elif parent.isdigit():
            parent_id = int(parent)
        else:
            raise InvalidError("Invalid parent folder ID", parent=parent)

    result = folders.list(principal, parent_id=parent_id)
    return {"success": True, "count": len(result), "data": [folder_out(f) for f in result]}


# --- folder with child folders and visible files ---
@router.get("/{folder_id}")
def get_folder(
    folder_id: int,
    principal: Principal = Depends(get_principal),
    folders: FolderManager = Depends(get_folder_manager),
):
    contents = folders.contents(folder_id, principal)
    return {
        "success": True,
        "data": {
            "folder": folder_out(contents["folder"]),
            "child_folders": [folder_out(f) for f in contents["child_folders"]],
            "files": [FileOut.model_validate(f).model_dump(mode="json") for f in contents["files"]],
            "file_count": contents["file_count"],
            "permissions": contents["permissions"],
        },
    }


# --- rename / move / metadata ---
@router.put("/{folder_id}")
def update_folder(
    folder_id: int,
    body: FolderUpdate,
    principal: Principal = Depends(get_principal),
    folders: FolderManager = Depends(get_folder_manager),
):
    folder = folders.get(folder_id)
    if not principal.is_admin and folder.created_by_id != principal.id:
        raise AccessDeniedError("Not authorized", user_id=principal.id, folder_id=folder_id)

    parent_id = body.parent_folder if "parent_folder" in body.model_fields_set else UNSET
    updated = folders.update(
        folder_id, name=body.name, parent_id=parent_id, metadata=body.metadata
    )
    return {"success": True, "data": folder_out(updated)}


# --- grant access ---
@router.post("/{folder_id}/access")
def grant_access(
    folder_id: int,
    body: AccessGrant,
    principal: Principal = Depends(require_roles("admin")),
    folders: FolderManager = Depends(get_folder_manager),
):
    folder = folders.grant_access(folder_id, body.user_id, body.permission)
    return {"success": True, "data": folder_out(folder)}


# --- revoke access ---
@router.delete("/{folder_id}/access/{user_id}")
def revoke_access(
    folder_id: int,
    user_id: int,
    principal: Principal = Depends(require_roles("admin")),
    folders: FolderManager = Depends(get_folder_manager),
):
    folder = folders.revoke_access(folder_id, user_id)
    return {"success": True, "data": folder_out(folder)}


# --- delete a folder (children are orphaned, file records removed) ---
@router.delete("/{folder_id}")
def delete_folder(
    folder_id: int,
    principal: Principal = Depends(require_roles("admin")),
    folders: FolderManager = Depends(get_folder_manager),
    files: FileManager = Depends(get_file_manager),
):
    orphans = folders.delete(
        folder_id,
        on_delete=lambda folder: files.delete_folder_records(folder.id, commit=False),
    )
    return {
        "success": True,
        "message": "Folder and contents deleted",
        "data": {"id": folder_id, "orphaned": [child.id for child in orphans]},
    }
