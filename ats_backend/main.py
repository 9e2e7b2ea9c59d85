from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from openai import OpenAI
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .analysis import UNMETERED_CREDITS, AnalysisWorkflow
from .auth import CredentialService, extract_bearer_token
from .config import DEFAULT_JWT_SECRET, Settings, load_settings
from .documents import MAX_UPLOAD_BYTES, screen_upload
from .errors import FileTooLarge, ServiceError
from .logs import configure_logging, get_logger, request_id_ctx
from .scoring import ScoringClient
from .store import Account, AccountStore

logger = get_logger("backend")

# Upload cap plus room for the multipart framing and the job description.
MAX_REQUEST_BYTES = MAX_UPLOAD_BYTES + 256 * 1024


class SignupRequest(BaseModel):
    email: str
    password: str
    name: str | None = None


class LoginRequest(BaseModel):
    email: str
    password: str


class Services:
    """Process-wide collaborators, opened at startup and closed at shutdown."""

    def __init__(
        self,
        store: AccountStore,
        credentials: CredentialService,
        workflow: AnalysisWorkflow,
        openai_client: OpenAI | None = None,
    ):
        self.store = store
        self.credentials = credentials
        self.workflow = workflow
        self.openai_client = openai_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "Services":
        if settings.jwt_secret == DEFAULT_JWT_SECRET:
            logger.warning("JWT_SECRET is using a default value. Set JWT_SECRET in production.")

        openai_client = None
        if settings.openai_api_key:
            openai_client = OpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.openai_timeout_seconds,
                max_retries=0,
            )
        else:
            logger.warning("OPENAI_API_KEY is missing. Analysis requests will fail until it is set.")

        store = AccountStore(database_url=settings.database_url, sqlite_path=settings.auth_db_path)
        credentials = CredentialService(store, settings.jwt_secret, ttl_days=settings.jwt_ttl_days)
        scorer = ScoringClient(openai_client, model=settings.openai_model)
        return cls(store, credentials, AnalysisWorkflow(store, scorer), openai_client)

    def open(self) -> None:
        self.store.open()

    def close(self) -> None:
        self.store.close()
        if self.openai_client is not None:
            self.openai_client.close()


def envelope_error(status_code: int, message: str, code: str, errors: list[Any] | None = None) -> JSONResponse:
    content: dict[str, Any] = {"success": False, "error": message, "code": code}
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=content)


def account_summary(account: Account) -> dict[str, Any]:
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "plan": account.plan,
        "creditsRemaining": account.credits_remaining if account.is_metered else UNMETERED_CREDITS,
    }


def declared_length(request: Request) -> int:
    try:
        return int(request.headers.get("content-length") or 0)
    except ValueError:
        return 0


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_account(request: Request, services: Services = Depends(get_services)) -> Account:
    return services.credentials.resolve(extract_bearer_token(request.headers.get("authorization")))


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    services = services or Services.from_settings(settings)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.open()
        logger.info("Backend ready (env=%s, db=%s).", settings.app_env, services.store.backend)
        try:
            yield
        finally:
            services.close()
            logger.info("Backend shut down.")

    app = FastAPI(title="ATS Analyzer Backend", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid4())
        token = request_id_ctx.set(rid)
        try:
            logger.info("Incoming %s %s", request.method, request.url.path)
            if declared_length(request) > MAX_REQUEST_BYTES:
                logger.info("Rejected %s %s: body over %s bytes", request.method, request.url.path, MAX_REQUEST_BYTES)
                response = envelope_error(FileTooLarge.status_code, FileTooLarge.message, FileTooLarge.code)
            else:
                try:
                    response = await call_next(request)
                except Exception:
                    logger.exception("UnhandledError %s", request.url.path)
                    response = envelope_error(500, "Internal server error", "INTERNAL")
            response.headers["X-Request-ID"] = rid
            logger.info("Completed %s %s -> %s", request.method, request.url.path, response.status_code)
            return response
        finally:
            request_id_ctx.reset(token)

    # Registered last so it is the outermost layer and decorates every response.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.__cause__ or exc)
        else:
            logger.info("%s on %s", exc.code, request.url.path)
        return envelope_error(exc.status_code, exc.message, exc.code, exc.errors)

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(part) for part in error.get("loc", ())[1:]), "message": error.get("msg", "")}
            for error in exc.errors()
        ]
        logger.warning("ValidationError %s | detail=%s", request.url.path, errors)
        return envelope_error(400, "Invalid request payload", "VALIDATION_ERROR", errors)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return envelope_error(404, "Route not found", "NOT_FOUND")
        return envelope_error(exc.status_code, str(exc.detail), "HTTP_ERROR")

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": int(time.time() * 1000),
            "uptime": int(time.monotonic() - started_at),
        }

    @app.post("/api/auth/signup")
    def signup(data: SignupRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
        account, token = services.credentials.register(data.email, data.password, data.name)
        return {"success": True, "data": {"token": token, "user": account_summary(account)}}

    @app.post("/api/auth/login")
    def login(data: LoginRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
        account, token = services.credentials.authenticate(data.email, data.password)
        return {"success": True, "data": {"token": token, "user": account_summary(account)}}

    @app.post("/api/analyze")
    async def analyze(
        account: Account = Depends(current_account),
        services: Services = Depends(get_services),
        resume: UploadFile | None = File(None),
        jobDescription: str | None = Form(None),
    ) -> dict[str, Any]:
        upload = None
        if resume is not None and resume.filename:
            contents = await resume.read(MAX_UPLOAD_BYTES + 1)
            upload = screen_upload(resume.filename, resume.content_type, contents)

        outcome = await run_in_threadpool(services.workflow.run, account, upload, jobDescription)
        return {"success": True, "data": outcome.as_payload()}

    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
