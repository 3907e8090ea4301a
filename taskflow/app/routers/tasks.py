"""Task API and HTML routers."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import HTMLResponse, RedirectResponse, StreamingResponse

from taskflow.app.deps import peek_controller, require_task_manager
from taskflow.app.schemas import TaskListResponse
from taskflow.app.views.registry import get_registry
from taskflow.app.views.session_controller import VIEW_AUTH, VIEW_DASHBOARD, SessionController
from taskflow.app.views.task_manager import TaskManager
from taskflow.app.web.templates import get_templates

logger = logging.getLogger(__name__)

pages_router = APIRouter()
api_router = APIRouter(prefix="/api", tags=["tasks"])
templates = get_templates()


def _back_home() -> RedirectResponse:
    return RedirectResponse(url="/", status_code=303)


@pages_router.get("/", response_class=HTMLResponse)
async def home(request: Request, controller: Optional[SessionController] = Depends(peek_controller)):
    """Render the dashboard, the auth form, or a loading page."""

    if controller is None:
        # First visit: nothing to load until the browser submits the form
        return templates.TemplateResponse(
            request,
            "auth.html",
            {"is_sign_up": False, "email": "", "message": None, "in_flight": False},
        )
    view = controller.view
    if view == VIEW_DASHBOARD and controller.task_manager is not None:
        manager = controller.task_manager
        return templates.TemplateResponse(
            request,
            "dashboard.html",
            {
                "email": controller.email,
                "tasks": manager.tasks,
                "pending_edits": manager.pending_edits,
                "form": {"title": manager.title, "description": manager.description},
                "is_submitting": manager.is_submitting,
                "last_error": manager.last_error,
            },
        )
    if view == VIEW_AUTH:
        auth = controller.auth_view
        return templates.TemplateResponse(
            request,
            "auth.html",
            {
                "is_sign_up": auth.is_sign_up,
                "email": auth.email,
                "message": auth.message,
                "in_flight": auth.in_flight,
            },
        )
    return templates.TemplateResponse(request, "loading.html", {})


@pages_router.post("/tasks")
async def create_task(
    title: str = Form(""),
    description: str = Form(""),
    image: Optional[UploadFile] = File(None),
    manager: TaskManager = Depends(require_task_manager),
):
    if image is not None and image.filename:
        data = await image.read()
        manager.stage_image(image.filename, data, image.content_type)
    await manager.create(title=title, description=description)
    return _back_home()


@pages_router.post("/tasks/{task_id}/delete")
async def delete_task(task_id: str, manager: TaskManager = Depends(require_task_manager)):
    await manager.delete(task_id)
    return _back_home()


@pages_router.post("/tasks/{task_id}/description")
async def update_description(
    task_id: str,
    description: str = Form(""),
    manager: TaskManager = Depends(require_task_manager),
):
    await manager.save_edit(task_id, description)
    return _back_home()


@api_router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(manager: TaskManager = Depends(require_task_manager)) -> TaskListResponse:
    items = manager.tasks
    return TaskListResponse(
        items=items,
        total=len(items),
        scope=manager.scope,
        form_state=manager.form_state.value,
        last_error=manager.last_error,
    )


@api_router.get("/events")
async def task_events(request: Request, manager: TaskManager = Depends(require_task_manager)):
    """Server-Sent Events: one message per visible change of the task list."""

    async def stream():
        yield "retry: 3000\n\n"
        registry = get_registry()
        async for item in manager.listen():
            if await request.is_disconnected():
                break
            # An open dashboard counts as activity
            registry.peek(request.state.sid)
            yield f"event: tasks\ndata: {json.dumps(item, default=str)}\n\n"

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
