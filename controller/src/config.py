from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    # Workspace settings
    workspace_root: str = "workspaces"

    # Results repository settings
    results_repo_dir: str = "results"
    results_remote: str = ""  # Empty disables publishing
    results_branch: str = "master"
    results_lock_path: str = ""  # Empty puts "<results_repo_dir>.lock" beside the working copy

    # Lock retry settings
    lock_attempts: int = 3
    lock_retry_delay: float = 3.0

    # Git command timeouts (seconds)
    git_timeout: float = 10.0
    git_clone_timeout: float = 60.0
    git_push_timeout: float = 20.0

    class Config:
        env_file = ".env"
        env_prefix = "PIPELINED_"
        extra = "ignore"

@lru_cache()
def get_settings() -> Settings:
    return Settings()
