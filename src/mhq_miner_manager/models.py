"""Data models for manifests, installation records and progress events.

All models use Pydantic v2 BaseModel with frozen=True for immutability.
"""

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import RECORD_FILE_NAME, STAGING_DIR_NAME


def normalize_checksum(value: str) -> str:
    """Return a checksum in 'sha256:<hex>' form.

    Accepts either the prefixed form or a bare 64-character hex digest.
    """
    text = value.strip().lower()
    if text.startswith("sha256:"):
        text = text[len("sha256:"):]
    if len(text) != 64 or any(c not in "0123456789abcdef" for c in text):
        raise ValueError(f"not a sha256 checksum: {value!r}")
    return f"sha256:{text}"


# Entries the installer itself keeps in the install directory
_RESERVED_ARTIFACT_NAMES = frozenset({RECORD_FILE_NAME, STAGING_DIR_NAME, 'logs'})


class Artifact(BaseModel):
    """A downloadable file required by one or more services."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="File name inside the install directory")
    url: str = Field(..., min_length=1, description="Download location (absolute or endpoint-relative)")
    checksum: str = Field(..., description="Expected content hash (format: sha256:...)")
    executable: bool = Field(default=False, description="Mark the file executable after staging")

    @field_validator('name')
    @classmethod
    def name_must_be_plain(cls, v: str) -> str:
        """Artifact names are bare file names, never paths."""
        if '/' in v or '\\' in v or v in ('.', '..'):
            raise ValueError(f'artifact name must be a plain file name: {v!r}')
        if v.lower() in _RESERVED_ARTIFACT_NAMES:
            raise ValueError(f'artifact name is reserved by the installer: {v!r}')
        return v

    @field_validator('checksum')
    @classmethod
    def checksum_must_be_sha256(cls, v: str) -> str:
        return normalize_checksum(v)


class ServiceDefinition(BaseModel):
    """A background service to register with the OS service manager."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Logical service identifier")
    executable: str = Field(..., min_length=1, description="Artifact name to run")
    args: list[str] = Field(default_factory=list)
    description: str = ""


class Manifest(BaseModel):
    """Artifacts and services published for one operating system."""

    model_config = ConfigDict(frozen=True)

    version: str | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    services: list[ServiceDefinition] = Field(default_factory=list)

    @model_validator(mode='after')
    def names_must_be_consistent(self) -> 'Manifest':
        """Artifact names are unique and every service runs a listed artifact."""
        names = [artifact.name for artifact in self.artifacts]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f'duplicate artifact names: {", ".join(duplicates)}')
        service_names = [service.name for service in self.services]
        if len(set(service_names)) != len(service_names):
            raise ValueError('duplicate service names')
        for service in self.services:
            if service.executable not in names:
                raise ValueError(
                    f'service {service.name} runs unknown artifact {service.executable}'
                )
        return self


class InstallationRecord(BaseModel):
    """Authoritative description of what is installed."""

    model_config = ConfigDict(frozen=True)

    install_path: str
    operating_system: str
    service_identifiers: list[str] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)
    version: str | None = None
    installed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProgressStage(StrEnum):
    """Phase boundaries reported while installing."""

    FETCH_STARTED = "fetch-started"
    FETCH_DONE = "fetch-done"
    REGISTERING = "registering"
    DONE = "done"


class ProgressEvent(BaseModel):
    """A single advisory progress notification."""

    model_config = ConfigDict(frozen=True)

    stage: ProgressStage
    message: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
