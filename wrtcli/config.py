from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Local storage
    config_dir: Path = Path.home() / ".wrtcli"
    backup_root: Optional[Path] = None

    # Device communication
    request_timeout: float = 10.0

    # Registry password encryption (Fernet key). Generated into config_dir when unset.
    encryption_key: str = ""

    # Application Settings
    log_level: str = "WARNING"

    class Config:
        env_prefix = "WRTCLI_"
        env_file = ".env"
        extra = "ignore"

    @model_validator(mode="after")
    def _default_backup_root(self):
        if self.backup_root is None:
            self.backup_root = self.config_dir / "backups"
        return self

    @property
    def registry_path(self) -> Path:
        return self.config_dir / "config.yaml"

    @property
    def key_path(self) -> Path:
        return self.config_dir / ".key"


def get_settings(**overrides) -> Settings:
    """Build settings from the environment, applying explicit overrides."""
    return Settings(**overrides)
