"""Process configuration: env-driven tool locations and runtime knobs.

Reads from a .env file and NIXFORGE_* environment variables.  Declarative
deployment settings (addresses, nix, ssh, secrets) live in
``nixforge.models.settings`` and are loaded from the TOML configuration file.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ForgeSettings(BaseSettings):
    """Runtime settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export NIXFORGE_LOG_LEVEL=DEBUG
        export NIXFORGE_STATE_PATH=/var/lib/nixforge/state
        export NIXFORGE_SSH_PROGRAM=/run/current-system/sw/bin/ssh
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="NIXFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Persisted instance state
    state_path: Path = Path(".nixforge/state")

    # External tools
    nix_program: str = "nix"
    nix_env_program: str = "nix-env"
    ssh_program: str = "ssh"
    tar_program: str = "tar"

    # Transient files (build wrapper, ssh configs); None means system default
    temp_dir: Path | None = None

    # Secrets fingerprint KDF cost range
    kdf_min_iterations: int = 32
    kdf_max_iterations: int = 64

    # Tee subprocess output into the log as it arrives
    live_log: bool = True

    @model_validator(mode="after")
    def _check_kdf_range(self) -> ForgeSettings:
        if self.kdf_min_iterations < 1:
            raise ValueError("kdf_min_iterations must be positive")
        if self.kdf_max_iterations < self.kdf_min_iterations:
            raise ValueError("kdf_max_iterations must be >= kdf_min_iterations")
        return self

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"
