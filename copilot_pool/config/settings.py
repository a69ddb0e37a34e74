"""Application settings loaded from environment variables."""

import os
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Listener
    host: str = "127.0.0.1"
    port: int = 4141

    # Persistence (accounts.json holds accounts + pool config)
    data_dir: str = "~/.local/share/copilot-pool"

    # Upstream endpoints
    github_api_base_url: str = "https://api.github.com"
    copilot_base_url_template: str = "https://api.{account_type}.githubcopilot.com"
    copilot_individual_base_url: str = "https://api.githubcopilot.com"
    vscode_version_url: str = (
        "https://aur.archlinux.org/cgit/aur.git/plain/PKGBUILD?h=visual-studio-code-bin"
    )

    # Client identity sent upstream
    copilot_chat_version: str = "0.26.7"
    github_api_version: str = "2025-04-01"
    vscode_version_fallback: str = "1.104.3"

    # Session lifecycle
    token_refresh_margin_seconds: float = 60.0  # refresh this long before expiry
    auto_start: bool = True
    prime_usage_on_start: bool = True

    # Upstream HTTP
    upstream_timeout_seconds: float = 300.0
    upstream_connect_timeout_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def resolved_data_dir(self) -> str:
        return os.path.expanduser(self.data_dir)

    @property
    def accounts_path(self) -> str:
        return os.path.join(self.resolved_data_dir, "accounts.json")

    @property
    def usage_cache_path(self) -> str:
        return os.path.join(self.resolved_data_dir, "usage-cache.json")

    def copilot_base_url(self, account_type: str) -> str:
        if account_type == "individual":
            return self.copilot_individual_base_url
        return self.copilot_base_url_template.format(account_type=account_type)


@lru_cache
def get_settings() -> Settings:
    return Settings()
