from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    listen_host: str = "0.0.0.0"
    listen_port: int = 5274
    max_workers: int = 5
    max_connections: int = 64
    accept_backlog: int = 16
    stop_grace_period: float = 3.0
    kill_running_on_stop: bool = False

    build_spec_path: str = "build.json"
    results_link_base: str = "results"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "PIPELINED_"
        extra = "ignore"

@lru_cache()
def get_settings() -> Settings:
    return Settings()
