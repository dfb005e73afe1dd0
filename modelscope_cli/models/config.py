"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_ENDPOINT = "https://modelscope.cn"

PROGRESS_POLICIES = ("full", "shallow")
LEDGER_BACKENDS = ("sqlite", "json")


class DownloadConfig(BaseModel):
    """A validated configuration model for the application."""

    # Repository & API
    endpoint: str = DEFAULT_ENDPOINT
    repository: str = ""
    api_token: str = ""

    # Download Settings
    destination: str = ""
    max_workers: int = 1
    transfer_attempts: int = 3
    progress_policy: str = "full"

    # Storage & Logging
    ledger_backend: str = "sqlite"
    log_dir: str = ""

    # Internal fields not loaded from INI file
    config_path: str = Field(..., repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Ensures the API endpoint is an absolute HTTP(S) URL without a trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Endpoint must start with http:// or https://, got: {v}")
        return v.rstrip("/")

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        """Accepts 'owner/name' with or without surrounding slashes."""
        v = v.strip("/")
        if v and v.count("/") != 1:
            raise ValueError(
                f"Repository must look like 'owner/name', got: {v}"
            )
        return v

    @field_validator("max_workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Ensures a reasonable number of workers."""
        if v < 1 or v > 32:
            raise ValueError("Max workers must be between 1 and 32.")
        return v

    @field_validator("transfer_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("Transfer attempts must be between 1 and 10.")
        return v

    @field_validator("progress_policy")
    @classmethod
    def validate_progress_policy(cls, v: str) -> str:
        v = v.lower()
        if v not in PROGRESS_POLICIES:
            raise ValueError(
                f"Progress policy must be one of {', '.join(PROGRESS_POLICIES)}."
            )
        return v

    @field_validator("ledger_backend")
    @classmethod
    def validate_ledger_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in LEDGER_BACKENDS:
            raise ValueError(
                f"Ledger backend must be one of {', '.join(LEDGER_BACKENDS)}."
            )
        return v

    @model_validator(mode="after")
    def validate_repository_present(self) -> "DownloadConfig":
        """A download needs to know which repository to read from."""
        if not self.repository:
            raise ValueError(
                "Repository is not configured. Run 'modelscope-cli init' or pass"
                " --repository."
            )
        return self

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
