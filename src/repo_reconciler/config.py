import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from repo_reconciler.application.reconciler_service import (
    DEFAULT_GRACE_PERIOD,
    DEFAULT_MAX_WORKERS,
    DEFAULT_TIMEOUT,
)
from repo_reconciler.infrastructure.descriptor import DEFAULT_DESCRIPTOR
from repo_reconciler.infrastructure.github_client import DEFAULT_API_URL

# Environment variable -> Settings field
ENV_VARS = {
    "GITHUB_API_URL": "api_url",
    "RECONCILER_DESCRIPTOR": "descriptor_path",
    "RECONCILER_GRACE_PERIOD": "grace_period",
    "RECONCILER_MAX_WORKERS": "max_workers",
    "RECONCILER_TIMEOUT": "timeout",
}


class Settings(BaseModel):
    """
    Runtime configuration. Values come from the environment (after .env is loaded)
    and are overridden by command-line flags.
    """
    model_config = ConfigDict(frozen=True)

    github_token: Optional[SecretStr] = Field(None, description="GitHub token (GITHUB_TOKEN or GH_TOKEN)")
    api_url: str = Field(DEFAULT_API_URL, min_length=1)
    descriptor_path: Path = Field(Path(DEFAULT_DESCRIPTOR))
    grace_period: float = Field(DEFAULT_GRACE_PERIOD, ge=0, description="Seconds verify waits for propagation")
    max_workers: int = Field(DEFAULT_MAX_WORKERS, ge=1, le=10, description="Concurrent field updates")
    timeout: float = Field(DEFAULT_TIMEOUT, gt=0, description="Seconds before in-flight updates are cancelled")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "Settings":
        """
        Builds settings from `environ` (default: os.environ). Keyword overrides
        that are None are ignored so unset CLI flags fall through to the environment.
        """
        if environ is None:
            environ = os.environ

        values: Dict[str, Any] = {}
        token = environ.get("GITHUB_TOKEN") or environ.get("GH_TOKEN")
        if token:
            values["github_token"] = token

        for env_name, field in ENV_VARS.items():
            if environ.get(env_name):
                values[field] = environ[env_name]

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def token_value(self) -> Optional[str]:
        return self.github_token.get_secret_value() if self.github_token else None
