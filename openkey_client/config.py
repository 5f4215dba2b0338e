"""
Client configuration.

Values default to a local development setup and can be overridden through
OPENKEY_* environment variables.
"""

import os
from typing import Literal, Optional, Mapping
from pydantic import BaseModel, Field


DEFAULT_SERVER_URL = "http://localhost:8787"
DEFAULT_POLL_INTERVAL = 2.0  # seconds


class ClientConfig(BaseModel):
    """Settings for a ChatClient"""
    server_url: str = DEFAULT_SERVER_URL
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    key_policy: Literal["rotating", "fixed"] = "rotating"
    master_secret: Optional[str] = None
    storage_dir: str = "client_data"
    storage_passphrase: Optional[str] = None
    request_timeout: float = Field(default=10.0, gt=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        """
        Build configuration from environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            ClientConfig with every set OPENKEY_* variable applied
        """
        environ = os.environ if environ is None else environ
        names = {
            "server_url": "OPENKEY_SERVER_URL",
            "poll_interval": "OPENKEY_POLL_INTERVAL",
            "key_policy": "OPENKEY_KEY_POLICY",
            "master_secret": "OPENKEY_MASTER_SECRET",
            "storage_dir": "OPENKEY_STORAGE_DIR",
            "storage_passphrase": "OPENKEY_STORAGE_PASSPHRASE",
            "request_timeout": "OPENKEY_REQUEST_TIMEOUT",
        }
        values = {field: environ[var] for field, var in names.items() if environ.get(var)}
        return cls(**values)
