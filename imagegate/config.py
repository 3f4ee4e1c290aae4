from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Chainguard organization
    chainguard_org_id: str
    chainguard_api_token: str = ""
    chainguard_registry: str = "cgr.dev"

    # Comma-separated chat user ids allowed to approve/reject
    approver_user_ids: str = ""

    # chainctl
    chainctl_path: str = "chainctl"
    chainctl_timeout_seconds: float = 120.0

    # Package search
    package_search_timeout_seconds: float = 10.0

    # Chat collaborator webhook receiving lifecycle events
    notifier_url: str | None = None

    # Request store
    store_backend: str = "memory"
    database_url: str = "sqlite:///./imagegate.sqlite3"

    class Config:
        env_file = ".env"

    @property
    def approvers(self) -> list[str]:
        return [uid.strip() for uid in self.approver_user_ids.split(",") if uid.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
