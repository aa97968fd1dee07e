"""HTTP surface of the installer: package upload, version info, first-run install."""

import logging
import re
import threading
from typing import Optional

from fastapi import FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from installer_api import __version__
from installer_api.bootstrap import MIN_PASSWORD_LENGTH, AdminAccount, BootstrapFlow
from installer_api.errors import InstallerError
from installer_api.logging_config import configure_root
from installer_api.settings import DEFAULT_DRIVER, DatabaseConfig, Settings
from installer_api.update_service import UpdateService

LOG_LEVEL = configure_root()
log = logging.getLogger("installer_api.app")

SETTINGS = Settings.from_env()
log.info(
    "installer_api %s starting: base_path=%s log_level=%s",
    __version__,
    SETTINGS.base_path,
    logging.getLevelName(LOG_LEVEL),
)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_SERVICES_LOCK = threading.Lock()
_UPDATE_SERVICE: Optional[UpdateService] = None
_BOOTSTRAP_FLOW: Optional[BootstrapFlow] = None


def get_update_service() -> UpdateService:
    global _UPDATE_SERVICE
    with _SERVICES_LOCK:
        if _UPDATE_SERVICE is None:
            _UPDATE_SERVICE = UpdateService(SETTINGS)
        return _UPDATE_SERVICE


def get_bootstrap_flow() -> BootstrapFlow:
    global _BOOTSTRAP_FLOW
    with _SERVICES_LOCK:
        if _BOOTSTRAP_FLOW is None:
            _BOOTSTRAP_FLOW = BootstrapFlow(SETTINGS)
        return _BOOTSTRAP_FLOW


# ---------- Request models ----------
class DatabaseConfigRequest(BaseModel):
    driver: str = Field(DEFAULT_DRIVER, description="SQLAlchemy driver, e.g. 'mysql+pymysql' or 'sqlite'")
    host: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    database: str = Field(..., min_length=1)
    username: Optional[str] = None
    password: Optional[str] = None


class InstallRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    password_confirmation: str

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: str) -> str:
        value = value.strip()
        if not _EMAIL_RE.match(value):
            raise ValueError("The email must be a valid email address.")
        return value

    @model_validator(mode="after")
    def _passwords_match(self) -> "InstallRequest":
        if self.password != self.password_confirmation:
            raise ValueError("The password confirmation does not match.")
        return self


app = FastAPI(title="Installer API", version=__version__)


@app.exception_handler(InstallerError)
async def installer_error_handler(request: Request, exc: InstallerError) -> JSONResponse:
    log.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------- Auth Helper ----------
def require_key(x_api_key: Optional[str]):
    if SETTINGS.api_key and x_api_key != SETTINGS.api_key:
        raise HTTPException(401, "Unauthorized")


@app.get("/health")
def health(x_api_key: Optional[str] = Header(None)):
    require_key(x_api_key)
    return {"ok": True, "version": __version__, "installed": get_bootstrap_flow().is_installed()}


# ---------- Updates ----------
@app.post("/updates")
def upload_update(
    update_file: Optional[UploadFile] = File(None),
    x_api_key: Optional[str] = Header(None),
):
    require_key(x_api_key)
    if update_file is None:
        return JSONResponse(
            status_code=400,
            content={"error": True, "code": "updates.invalid_upload", "message": "You did not select a file to upload."},
        )
    result = get_update_service().apply_upload(update_file.filename or "", update_file.file)
    return JSONResponse(status_code=result.status_code, content=result.to_dict())


@app.get("/updates/version")
def update_version(x_api_key: Optional[str] = Header(None)):
    require_key(x_api_key)
    return get_update_service().version_info()


@app.get("/updates/history")
def update_history(limit: int = 50, x_api_key: Optional[str] = Header(None)):
    require_key(x_api_key)
    return {"updates": get_update_service().history(limit)}


# ---------- Installer ----------
@app.get("/install")
def install_status(x_api_key: Optional[str] = Header(None)):
    require_key(x_api_key)
    return get_bootstrap_flow().status()


@app.post("/install/database")
def install_database(payload: DatabaseConfigRequest, x_api_key: Optional[str] = Header(None)):
    require_key(x_api_key)
    flow = get_bootstrap_flow()
    flow.configure_database(DatabaseConfig(**payload.model_dump()))
    return {"error": False, "message": "Database connection verified.", **flow.status()}


@app.post("/install")
def install(payload: InstallRequest, x_api_key: Optional[str] = Header(None)):
    require_key(x_api_key)
    account = AdminAccount(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        password=payload.password,
    )
    result = get_bootstrap_flow().install(account)
    return {"error": False, "message": "Installation completed successfully.", **result}
