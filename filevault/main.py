import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from filevault.core.config import get_settings
from filevault.core.errors import FileVaultError
from filevault.core.security import Principal
from filevault.models.database import Base, SessionLocal, engine
from filevault.models.user import User
from filevault.routers import files, folders  # <--- important
from filevault.services.folders import FolderManager
from filevault.services.storage import StorageAdapter

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("filevault")


def ensure_system_folders() -> None:
    if not settings.system_folders:
        return
    db = SessionLocal()
    try:
        admin = db.query(User).filter(User.role == "admin").order_by(User.id).first()
        if not admin:
            logger.warning("No admin user yet; system folders not created")
            return
        manager = FolderManager(db, StorageAdapter.from_settings(settings))
        for name in settings.system_folders:
            manager.ensure_system_folder(name, Principal.from_user(admin))
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    StorageAdapter.from_settings(settings)
    ensure_system_folders()
    logger.info(f"filevault started in {settings.environment} mode, storage root {settings.storage_root}")
    yield


app = FastAPI(title="filevault", lifespan=lifespan)

# include our routers
app.include_router(folders.router)
app.include_router(files.router)


@app.exception_handler(FileVaultError)
async def filevault_error_handler(request: Request, exc: FileVaultError):
    verbose = not get_settings().is_production
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, f"[{request.method}] {request.url.path}: {exc!r}")

    body = {"success": False, "error": exc.to_dict(include_context=verbose)}
    if verbose:
        body["details"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=exc.status_code, content=body)
