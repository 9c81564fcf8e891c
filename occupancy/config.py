"""
Configuration for the site occupancy service.

Process settings use pydantic-settings (Pydantic v2) and are loaded from:
- environment variables
- a local `.env` file in the project root

Site, switch and global polling settings are plain pydantic models. They
arrive over the control API or from `sites-config.json`, and accept the
camelCase keys that file has always used (`ipAddress`, `refreshInterval`...).
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from occupancy.errors import ConfigurationError


def _split_csv(v):
    """
    Accept "10, 20", 10, ["10", 20] or None and return a list.

    Empty items are dropped.
    """
    if v is None:
        return []
    if isinstance(v, (list, tuple, set)):
        return [item for item in v if str(item).strip()]
    if isinstance(v, int):
        return [v]
    if isinstance(v, str):
        return [p.strip() for p in v.split(",") if p.strip()]
    # let Pydantic complain about anything else
    return v


class Settings(BaseSettings):
    """
    Process-wide settings.

    Environment variables (with defaults):

    - SNMP_PORT:                    UDP port for SNMP (default: 161)
    - SNMP_TIMEOUT_SECONDS:         per-request timeout (default: 5)
    - SNMP_RETRIES:                 per-request retries (default: 2)
    - USE_SNMP_STUB:                "1" or "0" to simulate switches (default: 1/True)
    - SWITCH_POLL_TIMEOUT_SECONDS:  upper bound for one switch poll (default: 60)
    - DATABASE_URL:                 SQLAlchemy URL, default SQLite file "occupancy.db"
    - ARCHIVE_HISTORY:              write history samples to the database (default: 1)
    - SITES_CONFIG_PATH:            JSON file with sites + globalSettings
    - AUTOSTART_POLLING:            start polling from that file on startup (default: 1)
    - HISTORY_CAPACITY:             samples kept in memory per site (default: 100)
    - HISTORY_QUERY_LIMIT:          samples returned by /history (default: 50)
    - ACCESS_PORT_PATTERN:          regex an access port's ifDescr must match
    - ACCESS_PORT_PREFIX:           vendor prefix tried for excluded-port entries
    - LOG_LEVEL:                    logging level name (default: INFO)
    """

    snmp_port: int = 161
    snmp_timeout_seconds: float = 5.0
    snmp_retries: int = 2

    use_snmp_stub: bool = True

    switch_poll_timeout_seconds: float = 60.0

    database_url: str = "sqlite:///./occupancy.db"
    archive_history: bool = True

    sites_config_path: str = "sites-config.json"
    autostart_polling: bool = True

    history_capacity: int = 100
    history_query_limit: int = 50

    access_port_pattern: str = r"^GigabitEthernet\d+/\d+/\d+$"
    access_port_prefix: str = "GigabitEthernet"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("access_port_pattern")
    @classmethod
    def check_pattern(cls, v: str) -> str:
        re.compile(v)
        return v


# Single global settings object
settings = Settings()


# ---------------------------------------------------------------------------
# Polling configuration (sites, switches, thresholds)
# ---------------------------------------------------------------------------

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class GlobalSettings(BaseModel):
    """Thresholds and timers shared by every site unless a site overrides them."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    traffic_threshold_kbps: float = Field(50, alias="trafficThreshold", ge=0)
    session_timeout_minutes: float = Field(480, alias="sessionTimeout", gt=0)
    daily_reset_time: str = Field("00:00", alias="sessionResetTime")
    poll_interval_seconds: float = Field(90, alias="refreshInterval", gt=0)
    confirmation_polls_required: int = Field(2, alias="confirmationPolls", ge=1)

    @field_validator("daily_reset_time")
    @classmethod
    def check_reset_time(cls, v: str) -> str:
        if not _HHMM.match(v.strip()):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return v.strip()

    @property
    def reset_hour_minute(self) -> Tuple[int, int]:
        hour, minute = self.daily_reset_time.split(":")
        return int(hour), int(minute)


class SwitchConfig(BaseModel):
    """One switch stack polled as a single SNMP agent."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None
    host: str = Field(alias="ipAddress", min_length=1)
    community: str = Field(min_length=1)
    port: int = Field(default_factory=lambda: settings.snmp_port)
    stack_members: int = Field(1, alias="stackMembers", ge=1)
    excluded_vlans: List[int] = Field(default_factory=list, alias="excludedVlans")
    excluded_ports: List[str] = Field(default_factory=list, alias="excludedPorts")
    enabled: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)

    @field_validator("host", "community")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("excluded_vlans", "excluded_ports", mode="before")
    @classmethod
    def parse_lists(cls, v):
        return _split_csv(v)

    @property
    def cache_key(self) -> str:
        """Identity used for the counter cache; one entry per SNMP agent."""
        return f"{self.host}:{self.port}"

    @property
    def label(self) -> str:
        return self.name or self.host


class SiteConfig(BaseModel):
    """A physical site made of one or more switch stacks."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    name: Optional[str] = None
    enabled: bool = True
    switches: List[SwitchConfig] = Field(default_factory=list)
    traffic_threshold_kbps: Optional[float] = Field(None, alias="trafficThreshold", ge=0)
    poll_interval_seconds: Optional[float] = Field(None, alias="refreshInterval", gt=0)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return None if v is None else str(v)

    @property
    def label(self) -> str:
        return self.name or self.id

    def threshold(self, global_settings: GlobalSettings) -> float:
        if self.traffic_threshold_kbps is not None:
            return self.traffic_threshold_kbps
        return global_settings.traffic_threshold_kbps

    def interval(self, global_settings: GlobalSettings) -> float:
        if self.poll_interval_seconds is not None:
            return self.poll_interval_seconds
        return global_settings.poll_interval_seconds


# ---------------------------------------------------------------------------
# Validation helpers that turn pydantic errors into ConfigurationError
# ---------------------------------------------------------------------------


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def parse_global_settings(raw: Any) -> GlobalSettings:
    if raw is None:
        return GlobalSettings()
    if isinstance(raw, GlobalSettings):
        return raw
    try:
        return GlobalSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid global settings: {_describe(exc)}") from exc


def parse_switch(raw: Any) -> SwitchConfig:
    if isinstance(raw, SwitchConfig):
        return raw
    try:
        return SwitchConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid switch: {_describe(exc)}") from exc


def parse_sites(raw: Any) -> List[SiteConfig]:
    """Validate a list of site configs; duplicate site ids are rejected."""
    if raw is None:
        raise ConfigurationError("no sites configured")
    if not isinstance(raw, (list, tuple)):
        raise ConfigurationError("sites must be a list")

    sites: List[SiteConfig] = []
    seen = set()
    for i, item in enumerate(raw):
        if isinstance(item, SiteConfig):
            site = item
        else:
            try:
                site = SiteConfig.model_validate(item)
            except ValidationError as exc:
                raise ConfigurationError(f"invalid site #{i}: {_describe(exc)}") from exc
        if site.id in seen:
            raise ConfigurationError(f"duplicate site id {site.id!r}")
        seen.add(site.id)
        sites.append(site)
    return sites


def load_sites_config(path: str) -> Dict[str, Any]:
    """
    Read the sites file:

        {"sites": [...], "globalSettings": {...}}

    A missing file is not an error and yields no sites.
    """
    p = Path(path)
    if not p.exists():
        return {"sites": [], "globalSettings": None}

    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"cannot read {p}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"{p}: expected a JSON object")

    return {
        "sites": data.get("sites") or [],
        "globalSettings": data.get("globalSettings"),
    }
