import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskflow.app.auth import COOKIE_NAME, issue_browser_cookie, read_browser_cookie
from taskflow.app.config import get_settings
from taskflow.app.core.logging_config import configure_logging
from taskflow.app.routers import auth as auth_router
from taskflow.app.routers import files as files_router
from taskflow.app.routers import tasks as tasks_router
from taskflow.app.views.registry import get_registry

configure_logging(get_settings().app_log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="TaskFlow", version="1.0.0", docs_url="/docs", redoc_url=None)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def browser_session(request: Request, call_next):
    """Bind every request to a browser session id carried in a signed cookie."""
    settings = get_settings()
    sid = read_browser_cookie(request.cookies.get(COOKIE_NAME), settings.session_secret)
    cookie_value = None
    if sid is None:
        sid, cookie_value = issue_browser_cookie(settings.session_ttl_seconds, settings.session_secret)
    request.state.sid = sid

    response = await call_next(request)
    if cookie_value is not None:
        response.set_cookie(
            key=COOKIE_NAME,
            value=cookie_value,
            httponly=True,
            samesite="lax",
            secure=settings.cookie_secure,
            max_age=settings.session_ttl_seconds,
        )
    return response


@app.exception_handler(StarletteHTTPException)
async def unauthorized_to_home(request: Request, exc: StarletteHTTPException):
    # HTML form posts go back to the page that shows the auth form
    if exc.status_code == 401 and not request.url.path.startswith("/api/"):
        return RedirectResponse(url="/", status_code=303)
    return await http_exception_handler(request, exc)


@app.on_event("startup")
async def on_startup() -> None:
    app.state.sweeper = asyncio.create_task(get_registry().run_sweeper(get_settings().controller_sweep_seconds))


@app.on_event("shutdown")
async def on_shutdown() -> None:
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
    await get_registry().close_all()


app.include_router(tasks_router.pages_router)
app.include_router(tasks_router.api_router)
app.include_router(auth_router.router)
app.include_router(auth_router.api_router)
app.include_router(files_router.router, tags=["files"])


@app.get("/healthz")
async def healthz() -> dict:
    return {"status": "ok", "backend": get_settings().backend}
