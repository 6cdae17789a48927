from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "gateway"
    postgres_user: str = "gateway"
    db_password: str = "changeme"

    # Ollama
    ollama_base_url: str = "http://localhost:11434"
    # Generation can legitimately run for minutes on local hardware
    ollama_timeout: float = 600.0
    max_malformed_lines: int = 50

    # CORS
    frontend_url: str = "http://localhost:3000"
    cors_origins: str = ""

    # App
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:{self.db_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [self.frontend_url]
        if self.frontend_url != "http://localhost:3000":
            origins.append("http://localhost:3000")
        for origin in self.cors_origins.split(","):
            origin = origin.strip()
            if origin and origin not in origins:
                origins.append(origin)
        return origins

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
