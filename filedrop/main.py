import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from filedrop.auth import TOKEN_TTL, PasswordAuth
from filedrop.config import Settings, get_settings
from filedrop.coordinator import UploadCoordinator
from filedrop.errors import FileDropError, UnauthorizedError
from filedrop.models import (
    CancelRequest,
    ConfirmRequest,
    ConfirmResponse,
    ConnectionTestResponse,
    FileListResponse,
    LoginResponse,
    MultipartCompleteRequest,
    MultipartCompleteResponse,
    MultipartInitResponse,
    MultipartPresignRequest,
    MultipartPresignResponse,
    PasswordRequest,
    PresignRequest,
    PresignResponse,
    StorageCredentials,
    StorageStats,
    StorageStatusResponse,
)
from filedrop.ratelimit import RateLimitGuard, client_ip
from filedrop.repository import ConfigRepository, FileRepository, RateLimitRepository
from filedrop.setup_wizard import StorageSetup
from filedrop.storage import StorageBackend, StorageHandle
from filedrop.sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)

AUTH_COOKIE = "auth_token"
AUTH_COOKIE_MAX_AGE = int(TOKEN_TTL.total_seconds())


def create_app(settings: Settings | None = None, storage: StorageBackend | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    files = FileRepository(settings.database_path)
    rate_limits = RateLimitRepository(settings.database_path)
    config = ConfigRepository(settings.database_path)
    handle = StorageHandle()
    setup = StorageSetup(config, handle, settings)
    auth = PasswordAuth(config, settings.app_secret_key)
    guard = RateLimitGuard(
        rate_limits,
        window=timedelta(seconds=settings.rate_limit_window_seconds),
        max_requests=settings.rate_limit_max_requests,
        max_failed_attempts=settings.max_failed_attempts,
        block_duration=timedelta(seconds=settings.block_duration_seconds),
    )
    coordinator = UploadCoordinator(
        files,
        handle,
        max_file_size=settings.max_file_size,
        total_storage=settings.total_storage,
        part_size=settings.multipart_part_size,
        upload_url_ttl=timedelta(seconds=settings.upload_url_ttl_seconds),
        download_redirect_ttl=timedelta(seconds=settings.download_redirect_ttl_seconds),
    )
    sweeper = ExpirationSweeper(files, handle, interval=settings.sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        files.init()
        if storage is not None:
            handle.swap(storage)
        else:
            setup.reload()
        logger.info(
            "%s starting: env=%s storage_configured=%s password_set=%s",
            settings.app_name,
            settings.app_env,
            handle.current() is not None,
            auth.is_password_set(),
        )
        sweep_task = asyncio.create_task(sweeper.run_forever()) if settings.sweeper_enabled else None
        yield
        if sweep_task is not None:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = handle
    app.state.coordinator = coordinator
    app.state.guard = guard
    app.state.sweeper = sweeper

    def error_response(status_code: int, message: str, code: str) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message}},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        missing_fields = [
            ".".join(str(item) for item in error["loc"] if item != "body")
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        if missing_fields:
            message = f"missing parameters: {', '.join(missing_fields)}"
        else:
            message = "invalid request parameters"
        return error_response(400, message, "bad_request")

    @app.exception_handler(FileDropError)
    async def filedrop_exception_handler(_: Request, exc: FileDropError):
        return error_response(exc.status_code, exc.message, exc.code)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        ip = client_ip(request.headers, request.client.host if request.client else None)
        try:
            await run_in_threadpool(guard.check, ip)
        except FileDropError as exc:
            return error_response(exc.status_code, exc.message, exc.code)
        request.state.client_ip = ip
        return await call_next(request)

    def require_auth(request: Request) -> None:
        token = None
        header = request.headers.get("authorization", "")
        if header:
            if not header.startswith("Bearer "):
                raise UnauthorizedError("invalid authorization header")
            token = header[len("Bearer "):]
        else:
            token = request.cookies.get(AUTH_COOKIE)
        if not auth.verify(token):
            raise UnauthorizedError("unauthorized")

    def token_response(token: str) -> JSONResponse:
        body = LoginResponse(need_setup=handle.current() is None)
        response = JSONResponse(content=body.model_dump())
        response.set_cookie(
            AUTH_COOKIE, token, max_age=AUTH_COOKIE_MAX_AGE, httponly=True, samesite="strict"
        )
        return response

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "environment": settings.app_env}

    @app.get("/api/auth/password-status")
    def password_status() -> dict:
        return {"password_set": auth.is_password_set()}

    @app.post("/api/auth/setup-password")
    def setup_password(payload: PasswordRequest):
        return token_response(auth.set_password(payload.password))

    @app.post("/api/auth/login")
    def login(payload: PasswordRequest, request: Request):
        try:
            token = auth.login(payload.password)
        except UnauthorizedError:
            if auth.is_password_set():
                guard.record_failure(request.state.client_ip)
            raise
        return token_response(token)

    @app.get("/api/auth/status", dependencies=[Depends(require_auth)])
    def auth_status() -> dict:
        return {"authenticated": True, "need_setup": handle.current() is None}

    @app.get("/api/setup/status", response_model=StorageStatusResponse, dependencies=[Depends(require_auth)])
    def setup_status():
        return setup.status()

    @app.post("/api/setup/config", response_model=StorageStatusResponse, dependencies=[Depends(require_auth)])
    def setup_config(payload: StorageCredentials):
        setup.save(payload)
        return setup.status()

    @app.post("/api/setup/test", response_model=ConnectionTestResponse, dependencies=[Depends(require_auth)])
    def setup_test(payload: StorageCredentials):
        return setup.test(payload)

    @app.post("/api/upload/presign", response_model=PresignResponse, dependencies=[Depends(require_auth)])
    def presign_upload(payload: PresignRequest):
        result = coordinator.create_upload(
            payload.filename, payload.content_type, payload.size, payload.expires_in
        )
        return PresignResponse(**vars(result))

    @app.post("/api/upload/confirm", response_model=ConfirmResponse, dependencies=[Depends(require_auth)])
    def confirm_upload(payload: ConfirmRequest):
        result = coordinator.confirm_upload(payload.file_id)
        return ConfirmResponse(download_url=result.download_url, short_url=result.short_url)

    @app.post(
        "/api/upload/multipart/init", response_model=MultipartInitResponse, dependencies=[Depends(require_auth)]
    )
    def multipart_init(payload: PresignRequest):
        session = coordinator.initiate_multipart(
            payload.filename, payload.content_type, payload.size, payload.expires_in
        )
        return MultipartInitResponse(**vars(session))

    @app.post(
        "/api/upload/multipart/presign",
        response_model=MultipartPresignResponse,
        dependencies=[Depends(require_auth)],
    )
    def multipart_presign(payload: MultipartPresignRequest):
        url = coordinator.presign_part(payload.file_id, payload.upload_id, payload.part_number)
        return MultipartPresignResponse(upload_url=url, part_number=payload.part_number)

    @app.post(
        "/api/upload/multipart/complete",
        response_model=MultipartCompleteResponse,
        dependencies=[Depends(require_auth)],
    )
    def multipart_complete(payload: MultipartCompleteRequest):
        result = coordinator.complete_multipart(payload.file_id, payload.upload_id, payload.parts)
        return MultipartCompleteResponse(**vars(result))

    @app.post("/api/upload/cancel", dependencies=[Depends(require_auth)])
    def cancel_upload(payload: CancelRequest) -> dict:
        coordinator.cancel_upload(payload.file_id, payload.upload_id)
        return {"success": True, "message": "upload cancelled"}

    @app.get("/api/files", response_model=FileListResponse, dependencies=[Depends(require_auth)])
    def list_files(page: int = Query(1), limit: int = Query(20)):
        return coordinator.list_files(page, limit)

    @app.get("/api/files/{file_id}/download")
    def download_file(file_id: str):
        return RedirectResponse(coordinator.download_url(file_id), status_code=302)

    @app.delete("/api/files/{file_id}", dependencies=[Depends(require_auth)])
    def delete_file(file_id: str) -> dict:
        coordinator.delete_file(file_id)
        return {"success": True, "message": "file deleted"}

    @app.get("/s/{short_code}")
    def resolve_short_link(short_code: str):
        return RedirectResponse(coordinator.resolve_short_code(short_code), status_code=302)

    @app.get("/api/stats", response_model=StorageStats, dependencies=[Depends(require_auth)])
    def stats():
        return coordinator.stats()

    return app


app = create_app()
