import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_WHITESPACE_PATTERN = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    """Fold a multi-line fragment into one line with single spaces."""
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


# Registry entries

class ResourceEntry(BaseModel):
    """
    Metadata of one materialized resource (the store key is its name).

    Serialized with the camelCase field names used by the on-disk store format.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    sync_url: str = Field(default="", alias="syncUrl")

    @field_validator("sync_url", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class ListEntry(ResourceEntry):
    """A host/domain list referenced from profiles as `{name}`."""


class LuaEntry(ResourceEntry):
    """A script passed to the engine with `--lua-init`."""

    active: bool = True


class BlobEntry(ResourceEntry):
    """A binary attachment passed to the engine with `--blob`."""

    active: bool = True


class ProfileEntry(BaseModel):
    """
    One ordered fragment of engine configuration.

    Profile order is rule precedence, so profiles live in a list rather than a map.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    active: bool = True
    sync_url: str = Field(default="", alias="syncUrl")
    content: str = ""

    @field_validator("sync_url", "content", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def one_line(self) -> str:
        return collapse_whitespace(self.content)

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class StartupScripts(BaseModel):
    """Shell fragments run before the engine starts and after it exits."""
    model_config = ConfigDict(extra="ignore")

    before: str = ""
    after: str = ""


class EngineRelease(BaseModel):
    """A remote engine version discovered by a release locator."""
    model_config = ConfigDict(frozen=True)

    tag: str
    commit: str = ""


# Host configuration (dpiwarden.yaml)

class WardenSettings(BaseSettings):
    """
    Host-level settings (the 'dpiwarden' section in dpiwarden.yaml).
    """
    model_config = SettingsConfigDict(env_prefix='DPIWARDEN_', extra='ignore')

    env: str = "production"
    appdata_dir: Path = Path("~/.dpiwarden")
    log_level: str = "INFO"


class EngineSettings(BaseModel):
    """
    Engine distribution settings (the 'engine' section in dpiwarden.yaml).

    URL values are templates; `{repository}`, `{tag}`, `{commit}` and `{name}`
    are filled in where they apply.
    """
    model_config = ConfigDict(extra='ignore')

    family: str = "zapret2"
    repository: str = "bol-van/zapret2"
    locator: Literal["page", "api"] = "page"
    tags_url: str = "https://github.com/{repository}/tags"
    tag_pattern: str = (
        r'<h2.*?href="/{repository}/releases/tag/(?P<tag>.*?)"'
        r'.*?href="/{repository}/commit/(?P<commit>.*?)"'
    )
    api_tags_url: str = "https://api.github.com/repos/{repository}/tags"
    api_page_size: int = Field(default=100, ge=1, le=100)
    tarball_url: str = "https://github.com/{repository}/releases/download/{tag}/zapret2-{tag}.tar.gz"
    release_dir: str = "zapret2-{tag}"
    script_url: str = "https://raw.githubusercontent.com/{repository}/{commit}/lua/{name}.lua"
    release_scripts: List[str] = Field(
        default_factory=lambda: ["zapret-lib", "zapret-antidpi", "zapret-auto"]
    )


class HttpSettings(BaseModel):
    """
    Shared fetch helper settings (the 'http' section in dpiwarden.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    timeout_seconds: float = 30.0
    retries: int = Field(default=5, ge=1)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    user_agent: str = "dpiwarden"


class StorageSettings(BaseModel):
    """
    Store settings (the 'storage' section in dpiwarden.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    unload_after_seconds: float = Field(default=5.0, gt=0)


class SelfUpdateSettings(BaseModel):
    """
    Self-update settings (the 'self_update' section in dpiwarden.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    enabled: bool = True
    repository: str = "Greezor/bununban"
    latest_url: str = "https://github.com/{repository}/releases/latest"
    tag_pattern: str = r'href="/{repository}/releases/tag/(?P<tag>.*?)"'
    download_url: str = "https://github.com/{repository}/releases/latest/download/{binary}"
    relaunch_delay_seconds: int = Field(default=1, ge=0)


class HostConfig(BaseModel):
    """All host configuration sections, validated."""

    dpiwarden: WardenSettings = Field(default_factory=WardenSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    self_update: SelfUpdateSettings = Field(default_factory=SelfUpdateSettings)

    @classmethod
    def from_dict(cls, config_dict: Optional[Dict[str, Any]] = None) -> "HostConfig":
        """Build from a loaded YAML mapping; missing sections fall back to defaults."""
        config_dict = config_dict or {}
        return cls(
            dpiwarden=WardenSettings(**(config_dict.get("dpiwarden") or {})),
            engine=EngineSettings(**(config_dict.get("engine") or {})),
            http=HttpSettings(**(config_dict.get("http") or {})),
            storage=StorageSettings(**(config_dict.get("storage") or {})),
            self_update=SelfUpdateSettings(**(config_dict.get("self_update") or {})),
        )
