from typing import Optional

from fastapi import APIRouter, Depends, Form
from fastapi.responses import RedirectResponse

from taskflow.app.deps import get_controller, peek_controller
from taskflow.app.schemas import SessionInfo
from taskflow.app.views.auth_view import MODE_SIGN_IN
from taskflow.app.views.session_controller import VIEW_AUTH, SessionController

router = APIRouter(prefix="/auth", tags=["auth"])
api_router = APIRouter(prefix="/api", tags=["auth"])


def _back_home() -> RedirectResponse:
    return RedirectResponse(url="/", status_code=303)


@router.post("/submit")
async def submit(
    email: str = Form(...),
    password: str = Form(...),
    controller: SessionController = Depends(get_controller),
):
    await controller.auth_view.submit(email=email, password=password)
    # Let the session listener switch views before the page reloads
    await controller.settle()
    return _back_home()


@router.post("/toggle")
async def toggle(controller: SessionController = Depends(get_controller)):
    controller.auth_view.toggle_mode()
    return _back_home()


@router.post("/logout")
async def logout(controller: Optional[SessionController] = Depends(peek_controller)):
    if controller is not None:
        await controller.logout()
        await controller.settle()
    return _back_home()


@api_router.get("/session", response_model=SessionInfo)
async def session_info(controller: Optional[SessionController] = Depends(peek_controller)) -> SessionInfo:
    if controller is None:
        return SessionInfo(view=VIEW_AUTH, auth_mode=MODE_SIGN_IN)
    return controller.info()
