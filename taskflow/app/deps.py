"""Request dependencies: the browser's Session Controller and its Task Manager."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request

from taskflow.app.views.registry import get_registry
from taskflow.app.views.session_controller import SessionController
from taskflow.app.views.task_manager import TaskManager

logger = logging.getLogger(__name__)


def _sid(request: Request) -> str:
    sid = getattr(request.state, "sid", None)
    if not sid:
        raise HTTPException(status_code=401, detail="Missing browser session")
    return sid


async def get_controller(request: Request) -> SessionController:
    """Controller for this browser, created on first use."""
    return await get_registry().get_or_create(_sid(request))


async def peek_controller(request: Request) -> Optional[SessionController]:
    """Controller for this browser if one exists; read-only routes never create one."""
    return get_registry().peek(_sid(request))


async def require_task_manager(controller: Optional[SessionController] = Depends(peek_controller)) -> TaskManager:
    manager = controller.task_manager if controller is not None else None
    if controller is None or controller.session is None or manager is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return manager
