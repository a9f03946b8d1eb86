from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from os import getenv
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from starlette.exceptions import HTTPException as StarletteHTTPException

from common.logger import get_logger
from jobs.controller import JobController
from jobs.dispatch import RabbitDispatcher
from jobs.errors import ArtifactNotFoundError, DispatchError, InvalidJobIdError, JobNotFoundError
from jobs.models import Job, JobConfig
from producer.models import (
    AuthRequest,
    AuthResponse,
    ErrorResponse,
    JobCreatedResponse,
    JobDeletedResponse,
)
from rabbit.broker import RabbitMQClient
from runner.engine import JobRunner
from runner.session import BrowserSessionFactory
from storage.keys import API_PREFIX
from storage.stores import ArtifactStore, JobStore

security = HTTPBearer(auto_error=False)

SECRET_KEY = getenv("JWT_SECRET_KEY", "jwt-secret-key")
ALGORITHM = getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(getenv("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", 30))

JOB_DISPATCH = getenv("JOB_DISPATCH", "local").lower()
CORS_ORIGINS = [origin.strip() for origin in getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

ARTIFACT_CACHE_CONTROL = "public, max-age=3600"


class Server:
    def __init__(self, controller: Optional[JobController] = None):
        self._logger = get_logger(__name__)
        self._controller = controller
        self._owns_controller = controller is None
        self._sessions: Optional[BrowserSessionFactory] = None

        self._auth_enabled = getenv("AUTH_ENABLED", "false").lower() in ("1", "true", "yes")
        admin_login = getenv("ADMIN_LOGIN", "admin")
        admin_pass = getenv("ADMIN_PASSWORD", "admin")

        self._users: Dict[str, str] = {admin_login: admin_pass}

        self.app = FastAPI(title="playwright-jobs", lifespan=self._lifespan)
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=CORS_ORIGINS,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self.register_exception_handlers()
        self.register_routes()

    @asynccontextmanager
    async def _lifespan(self, _app: FastAPI) -> AsyncIterator[None]:
        await self._on_startup()
        try:
            yield
        finally:
            await self._on_shutdown()

    async def _on_startup(self) -> None:
        if self._controller is not None:
            return

        jobs = JobStore.from_env()
        artifacts = ArtifactStore.from_env()
        await jobs.purge_expired()
        await artifacts.purge_expired()

        if JOB_DISPATCH == "rabbit":
            rabbit = await RabbitMQClient.wait_for_broker()
            await rabbit.declare_all_queues()
            self._controller = JobController(jobs, artifacts, dispatcher=RabbitDispatcher(rabbit))

            self._logger.info("Successfully connected to RabbitMQ; jobs go to the worker queue")
            return

        self._sessions = BrowserSessionFactory()
        await self._sessions.start()
        self._controller = JobController(jobs, artifacts, JobRunner(self._sessions, artifacts))
        await self._controller.recover_interrupted()

        self._logger.info("Jobs run in-process")

    async def _on_shutdown(self) -> None:
        if self._owns_controller and self._controller is not None:
            await self._controller.dispatcher.close()
        if self._sessions:
            await self._sessions.stop()

        self._logger.info("Server stopped")

    @property
    def controller(self) -> JobController:
        if self._controller is None:
            raise HTTPException(status_code=503, detail="Service is not ready")
        return self._controller

    def register_exception_handlers(self) -> None:
        @self.app.exception_handler(RequestValidationError)
        async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
            self._logger.warning("Invalid request to %s: %s", request.url.path, exc.errors())
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())},
            )

        @self.app.exception_handler(StarletteHTTPException)
        async def http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": exc.detail},
                headers=getattr(exc, "headers", None),
            )

        @self.app.exception_handler(Exception)
        async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
            self._logger.exception("Unhandled error in %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "message": str(exc)},
            )

    def register_routes(self) -> None:
        if self._auth_enabled:
            @self.app.post(
                f"{API_PREFIX}/auth",
                response_model=AuthResponse,
                responses={
                    401: {"model": ErrorResponse},
                    403: {"model": ErrorResponse},
                },
                summary="Issue a bearer token",
                tags=["auth"],
            )
            async def auth(request: AuthRequest) -> AuthResponse:
                if request.username not in self._users or self._users[request.username] != request.password:
                    self._logger.error("Invalid credentials for user %s", request.username)
                    raise HTTPException(status_code=403, detail="Invalid credentials")

                access_token = self.create_access_token({"sub": request.username})
                return AuthResponse(access_token=access_token)

        @self.app.post(
            f"{API_PREFIX}/jobs",
            status_code=202,
            response_model=JobCreatedResponse,
            responses={
                400: {"model": ErrorResponse},
                401: {"model": ErrorResponse},
                403: {"model": ErrorResponse},
                503: {"model": ErrorResponse},
            },
            summary="Submit a browser test job",
            tags=["Jobs"],
        )
        async def submit_job(
                config: JobConfig,
                _username: Optional[str] = Depends(self.verify_token)
        ) -> JobCreatedResponse:
            try:
                job = await self.controller.submit(config)
            except DispatchError as exc:
                raise HTTPException(status_code=503, detail=f"Job queue unavailable: {exc}")

            return JobCreatedResponse(job_id=job.id, status=job.status)

        @self.app.get(
            f"{API_PREFIX}/jobs/{{job_id}}",
            response_model=Job,
            response_model_exclude_none=True,
            responses={404: {"model": ErrorResponse}},
            summary="Job status and, once finished, its result",
            tags=["Jobs"],
        )
        async def get_job(job_id: str, _username: Optional[str] = Depends(self.verify_token)) -> Job:
            try:
                return await self.controller.get(job_id)
            except JobNotFoundError:
                self._logger.warning("Job %s not found in route '/jobs/{job_id}'", job_id)
                raise HTTPException(status_code=404, detail="Job not found")

        @self.app.get(
            f"{API_PREFIX}/jobs/{{job_id}}/trace",
            responses={
                200: {"content": {"application/zip": {}}},
                404: {"model": ErrorResponse},
            },
            summary="Playwright trace bundle of a job",
            tags=["Artifacts"],
        )
        async def get_trace(job_id: str, _username: Optional[str] = Depends(self.verify_token)) -> Response:
            try:
                bundle = await self.controller.fetch_trace(job_id)
            except ArtifactNotFoundError:
                raise HTTPException(status_code=404, detail="Trace file not found")

            return Response(
                content=bundle,
                media_type="application/zip",
                headers={
                    "Content-Disposition": f'attachment; filename="trace-{job_id}.zip"',
                    "Cache-Control": ARTIFACT_CACHE_CONTROL,
                },
            )

        @self.app.delete(
            f"{API_PREFIX}/jobs/{{job_id}}",
            response_model=JobDeletedResponse,
            responses={
                400: {"model": ErrorResponse},
                404: {"model": ErrorResponse},
            },
            summary="Delete a job with its screenshots and trace",
            tags=["Jobs"],
        )
        async def delete_job(
                job_id: str,
                _username: Optional[str] = Depends(self.verify_token)
        ) -> JobDeletedResponse:
            try:
                await self.controller.delete(job_id)
            except InvalidJobIdError:
                raise HTTPException(status_code=400, detail="Invalid job ID")
            except JobNotFoundError:
                raise HTTPException(status_code=404, detail="Job not found")

            return JobDeletedResponse(job_id=job_id)

        @self.app.get(
            f"{API_PREFIX}/jobs/{{job_id}}/screenshots/{{screenshot_id}}",
            responses={
                200: {"content": {"image/png": {}}},
                404: {"model": ErrorResponse},
            },
            summary="Screenshot captured by a job",
            tags=["Artifacts"],
        )
        async def get_screenshot(
                job_id: str,
                screenshot_id: str,
                _username: Optional[str] = Depends(self.verify_token)
        ) -> Response:
            try:
                image = await self.controller.fetch_screenshot(job_id, screenshot_id)
            except ArtifactNotFoundError:
                raise HTTPException(status_code=404, detail="Screenshot not found")

            return Response(
                content=image,
                media_type="image/png",
                headers={"Cache-Control": ARTIFACT_CACHE_CONTROL},
            )

    @staticmethod
    def create_access_token(data: dict) -> str:
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        to_encode.update({"exp": expire})

        return jwt.encode(claims=to_encode, key=SECRET_KEY, algorithm=ALGORITHM)

    def verify_token(
            self,
            credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
    ) -> Optional[str]:
        if not self._auth_enabled:
            return None

        if credentials is None:
            raise HTTPException(status_code=401, detail="Not authenticated")

        try:
            payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError:
            self._logger.exception("Failed to validate the token")
            raise HTTPException(status_code=401, detail="Could not validate credentials")

        username: Optional[str] = payload.get("sub")
        if username is None or username not in self._users:
            self._logger.warning("Unknown user %s during token validation", username)
            raise HTTPException(status_code=403, detail="Unknown credentials")

        return username
