from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Backend selection: "supabase" talks to a hosted project, "local" keeps
    # everything in SQLite + a local directory for development.
    backend: str = Field("local")

    supabase_url: str = Field("")
    supabase_anon_key: str = Field("")

    tasks_table: str = Field("tasks")
    image_bucket: str = Field("tasks-images")

    # Storage selection: "backend" uses the backend's own object storage,
    # "local" a directory served under /files, "s3" any S3-compatible endpoint.
    storage_backend: str = Field("backend")
    local_storage_root: str = Field("./data_debug")

    # S3-compatible storage (Supabase S3 gateway, Cloudflare R2, MinIO ...)
    s3_endpoint: str = Field("")
    s3_access_key: str = Field("")
    s3_secret_key: str = Field("")
    s3_region: str = Field("auto")
    s3_public_base_url: str = Field("")

    # Local backend database (ignored when backend=supabase)
    local_database_url: str = Field("sqlite:///./taskflow.db")

    # Browser session cookie
    session_secret: str = Field("dev-secret-change-me")
    session_ttl_seconds: int = Field(43200)
    cookie_secure: bool = Field(False)
    # Per-browser controllers are dropped after this much inactivity
    controller_idle_seconds: float = Field(3600.0)
    controller_sweep_seconds: float = Field(60.0)

    # "shared": every signed-in user sees the whole table.
    # "owner": load query and change feed are filtered by the user's email.
    task_scope: str = Field("shared")

    backend_timeout_seconds: float = Field(15.0)
    # "timestamp": <filename>-<millis>-<token>, "content": sha256 of the bytes
    upload_key_strategy: str = Field("timestamp")

    realtime_heartbeat_seconds: float = Field(25.0)
    realtime_reconnect_seconds: float = Field(3.0)

    app_log_level: str = Field("INFO")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# ============================================================
#  Adapter factories
# ============================================================

def create_storage_service(settings: Settings | None = None):
    """Return the storage adapter selected by STORAGE_BACKEND.

    Imports stay inside the function so optional drivers (boto3) are only
    loaded when selected.
    """
    settings = settings or get_settings()
    backend = (settings.storage_backend or "backend").strip().lower()

    if backend == "s3":
        from taskflow.app.adapters.storage_s3 import S3StorageService

        return S3StorageService(
            endpoint_url=settings.s3_endpoint,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region_name=settings.s3_region,
            public_base_url=settings.s3_public_base_url,
        )
    if backend == "local" or (backend == "backend" and settings.backend == "local"):
        from taskflow.app.adapters.storage_local import LocalStorageService

        return LocalStorageService(root_dir=settings.local_storage_root)
    if backend == "backend" and settings.backend == "supabase":
        from taskflow.app.adapters.supabase_storage import SupabaseStorageService

        return SupabaseStorageService(
            base_url=settings.supabase_url,
            api_key=settings.supabase_anon_key,
            timeout=settings.backend_timeout_seconds,
        )
    raise RuntimeError(f"Unknown STORAGE_BACKEND: {settings.storage_backend}")


def create_backend(settings: Settings | None = None):
    """Return a per-browser-session backend client.

    Each Session Controller owns one client so auth state never leaks between
    browser sessions.
    """
    settings = settings or get_settings()
    backend = (settings.backend or "local").strip().lower()
    storage = create_storage_service(settings)

    if backend == "supabase":
        if not (settings.supabase_url and settings.supabase_anon_key):
            raise RuntimeError(
                "Backend misconfigured: SUPABASE_URL and SUPABASE_ANON_KEY are required for BACKEND=supabase"
            )
        from taskflow.app.adapters.supabase_client import SupabaseBackend

        return SupabaseBackend(settings=settings, storage=storage)
    if backend == "local":
        from taskflow.app.adapters.backend_local import LocalBackend

        return LocalBackend(storage=storage)
    raise RuntimeError(f"Unknown BACKEND: {settings.backend}")
