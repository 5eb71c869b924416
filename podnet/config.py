"""Plugin settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Plugin settings loaded from environment variables."""

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    # Directories searched for IPAM plugin binaries when CNI_PATH is unset
    cni_path: str = "/opt/cni/bin"

    # IPAM plugin exec timeout (seconds)
    plugin_timeout: float = 30.0

    # Local endpoint datastore
    state_path: str = "/var/lib/podnet"

    # Node identity (hostname if empty)
    node_name: str = ""

    class Config:
        env_prefix = "PODNET_"


settings = Settings()
