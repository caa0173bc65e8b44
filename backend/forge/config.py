from pydantic_settings import BaseSettings
from functools import lru_cache
import os


class Settings(BaseSettings):
    anthropic_api_key: str = ""

    # Generation chain
    default_model: str = "claude-sonnet-4-5-20250929"
    stage_max_tokens: int = 16000

    # Filesystem layout
    projects_root: str = "generated-projects"
    templates_dir: str = ""  # empty = built-in templates only
    schema_path: str = ""  # empty = built-in project schema
    logs_dir: str = "chat-history"

    # Reverse-proxy deployment
    nginx_enabled: bool = False
    nginx_projects_path: str = "nginx-projects"
    nginx_reload_command: str = "nginx -s reload"
    deploy_domain: str = "localhost"
    deploy_log_path: str = "deploy-log.txt"
    max_subdomain_length: int = 63

    # Toolchain binaries
    npm_bin: str = "npm"
    npx_bin: str = "npx"

    # Port allocation
    bind_host: str = "127.0.0.1"
    vite_base_port: int = 5173
    next_base_port: int = 3000
    static_base_port: int = 8000
    port_probe_span: int = 100

    # Timeouts (seconds)
    install_timeout: int = 300
    build_timeout: int = 300
    dev_ready_timeout: int = 15
    static_ready_timeout: int = 5
    reload_timeout: int = 30

    # Closed sessions kept in memory (older ones are read from logs_dir)
    max_closed_sessions: int = 100

    log_level: str = "INFO"

    class Config:
        # .env in the repo root (two levels up from backend/forge/); optional
        _env_path = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file = _env_path if os.path.exists(_env_path) else None
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
