from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from fastapi.templating import Jinja2Templates

from taskflow.app.config import get_settings

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates"


@lru_cache()
def get_templates() -> Jinja2Templates:
    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
    settings = get_settings()
    templates.env.globals["app_name"] = "TaskFlow"
    templates.env.globals["task_scope"] = settings.task_scope
    return templates
