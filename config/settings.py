from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """PR Preview orchestrator configuration"""

    # API Settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    frontend_url: str = "http://localhost:5173"

    # Database
    db_path: str = "/var/lib/pr-previews/previews.db"

    # GitHub
    github_url: str = "https://github.com"
    github_api_url: str = "https://api.github.com"
    public_webhook_url: str = "http://localhost:8000"

    # Preview containers
    preview_scheme: str = "http"
    preview_host: str = "localhost"
    static_internal_port: int = 80
    backend_internal_port: int = 3000
    workdir_prefix: str = "pr-build-"

    # Timeouts (seconds)
    clone_timeout_seconds: int = 300
    build_timeout_seconds: int = 900

    # Simulated PR events for local development
    enable_dev_routes: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
