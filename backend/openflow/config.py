"""Application configuration via environment variables."""
from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    app_name: str = "OpenFlow"
    debug: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    definitions_dir: Path = PROJECT_ROOT / "data" / "flows"
    instances_dir: Path = PROJECT_ROOT / "data" / "instances"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]
    action_workers: int = 4

    model_config = {"env_prefix": "OPENFLOW_"}


settings = Settings()
settings.definitions_dir.mkdir(parents=True, exist_ok=True)
settings.instances_dir.mkdir(parents=True, exist_ok=True)
