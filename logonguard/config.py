"""Configuration management for LogonGuard.

Two things live here:

- the layered policy resolver (built-in defaults < bundled branding < local
  overrides < managed policy) that produces an immutable EffectiveConfig;
- process settings (paths, timeouts, health server) read from the
  environment, the way the service is deployed.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from dotenv import load_dotenv

from . import __version__
from .constants import (
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_RULES_URL,
    DEFAULT_UPDATE_INTERVAL_HOURS,
    LOCAL_CONFIG_KEY,
    MAX_UPDATE_INTERVAL_HOURS,
    MIN_UPDATE_INTERVAL_HOURS,
    Provenance,
)
from .errors import ConfigImportError
from .storage.kv import KeyValueStore
from .storage.policy import PolicySource, StaticPolicySource, load_mapping_file

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"
BUNDLED_BRANDING_PATH = DATA_DIR / "branding.json"

DEFAULT_BRANDING: dict[str, str] = {
    "companyName": "",
    "productName": "",
    "supportEmail": "",
    "primaryColor": "#F77F00",
    "logoUrl": "",
}

# Built-in defaults, keyed by the external (camelCase) config surface.
DEFAULT_CONFIG: dict[str, Any] = {
    "customRulesUrl": DEFAULT_RULES_URL,
    "updateInterval": DEFAULT_UPDATE_INTERVAL_HOURS,
    "enablePageBlocking": True,
    "enableCippReporting": False,
    "cippServerUrl": "",
    "cippTenantId": "",
    "urlAllowlist": [],
    "extraTrustedOrigins": [],
    "showNotifications": True,
    "enableValidPageBadge": False,
    "enableDebugLogging": False,
    "customBranding": dict(DEFAULT_BRANDING),
}

# External key -> EffectiveConfig attribute.
FIELD_NAMES: dict[str, str] = {
    "customRulesUrl": "custom_rules_url",
    "updateInterval": "update_interval_hours",
    "enablePageBlocking": "enable_page_blocking",
    "enableCippReporting": "enable_cipp_reporting",
    "cippServerUrl": "cipp_server_url",
    "cippTenantId": "cipp_tenant_id",
    "urlAllowlist": "url_allowlist",
    "extraTrustedOrigins": "extra_trusted_origins",
    "showNotifications": "show_notifications",
    "enableValidPageBadge": "enable_valid_page_badge",
    "enableDebugLogging": "enable_debug_logging",
    "customBranding": "custom_branding",
}
_ATTR_TO_KEY = {attr: key for key, attr in FIELD_NAMES.items()}


# -----------------------------------------------------------------------------
# Value coercion. Each coercer raises ValueError for unusable input, in which
# case the lower layer's value is kept.
# -----------------------------------------------------------------------------


def _coerce_rules_url(value: Any) -> str:
    if value is None:
        return DEFAULT_RULES_URL
    if not isinstance(value, str):
        raise ValueError("customRulesUrl must be a string")
    url = value.strip()
    if not url:
        return DEFAULT_RULES_URL
    if not url.lower().startswith("https://"):
        raise ValueError(f"customRulesUrl must use https: {url}")
    return url


def _coerce_interval(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("updateInterval must be a number")
    if isinstance(value, str):
        value = value.strip()
    hours = int(float(value))
    return max(MIN_UPDATE_INTERVAL_HOURS, min(MAX_UPDATE_INTERVAL_HOURS, hours))


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
    raise ValueError(f"not a boolean: {value!r}")


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ValueError(f"not a string: {value!r}")
    return str(value).strip()


def parse_list_setting(value: Any) -> tuple[str, ...]:
    """Newline-delimited string or list -> tuple, skipping blanks and # comments."""
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.splitlines()
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value if item is not None]
    else:
        raise ValueError(f"expected a string or list, got {type(value).__name__}")
    cleaned = []
    for item in items:
        entry = item.strip()
        if entry and not entry.startswith("#"):
            cleaned.append(entry)
    return tuple(cleaned)


_COERCERS: dict[str, Callable[[Any], Any]] = {
    "customRulesUrl": _coerce_rules_url,
    "updateInterval": _coerce_interval,
    "enablePageBlocking": _coerce_bool,
    "enableCippReporting": _coerce_bool,
    "cippServerUrl": _coerce_str,
    "cippTenantId": _coerce_str,
    "urlAllowlist": parse_list_setting,
    "extraTrustedOrigins": parse_list_setting,
    "showNotifications": _coerce_bool,
    "enableValidPageBadge": _coerce_bool,
    "enableDebugLogging": _coerce_bool,
}


@dataclass(frozen=True)
class EffectiveConfig:
    """Fully merged configuration snapshot with per-field provenance."""

    custom_rules_url: str
    update_interval_hours: int
    enable_page_blocking: bool
    enable_cipp_reporting: bool
    cipp_server_url: str
    cipp_tenant_id: str
    url_allowlist: tuple[str, ...]
    extra_trusted_origins: tuple[str, ...]
    show_notifications: bool
    enable_valid_page_badge: bool
    enable_debug_logging: bool
    custom_branding: Mapping[str, str]
    provenance: Mapping[str, Provenance] = field(default_factory=dict, compare=False)

    def source_of(self, key: str) -> Provenance:
        """Provenance of a field; accepts camelCase keys, attribute names or customBranding.sub."""
        name = _ATTR_TO_KEY.get(key, key)
        return self.provenance.get(name, Provenance.DEFAULT)

    def is_locked(self, key: str) -> bool:
        """True when managed policy holds the key (UI shows it as locked)."""
        return self.source_of(key) is Provenance.MANAGED

    @property
    def locked_keys(self) -> list[str]:
        return sorted(k for k, p in self.provenance.items() if p is Provenance.MANAGED)

    def to_dict(self) -> dict:
        """External (camelCase) view of the effective values."""
        result = {}
        for key, attr in FIELD_NAMES.items():
            value = getattr(self, attr)
            if isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, Mapping):
                value = dict(value)
            result[key] = value
        return result


def _branding_subkeys(layer: Mapping[str, Any]) -> dict:
    """Branding values from a layer: the customBranding object plus top-level branding keys."""
    values = {}
    for key in DEFAULT_BRANDING:
        if key in layer:
            values[key] = layer[key]
    nested = layer.get("customBranding")
    if isinstance(nested, Mapping):
        values.update(nested)
    elif nested is not None:
        logger.warning("Ignoring non-object customBranding value")
    return values


def merge_layers(
    defaults: Mapping[str, Any],
    branding: Optional[Mapping[str, Any]] = None,
    local: Optional[Mapping[str, Any]] = None,
    managed: Optional[Mapping[str, Any]] = None,
) -> EffectiveConfig:
    """
    Merge the four configuration layers into an EffectiveConfig.

    Field-level and rank-ordered: a present key in a higher layer wins, absent
    keys fall through. customBranding merges per sub-key. Values that cannot
    be coerced are ignored with a warning so the lower layer's value stands.
    """
    layers = (
        (Provenance.DEFAULT, defaults or {}),
        (Provenance.BRANDING, branding or {}),
        (Provenance.LOCAL, local or {}),
        (Provenance.MANAGED, managed or {}),
    )

    values: dict[str, Any] = {}
    provenance: dict[str, Provenance] = {}
    brand: dict[str, str] = {}

    for rank, layer in layers:
        if not isinstance(layer, Mapping):
            logger.warning("Ignoring %s config layer: not a mapping", rank.value)
            continue
        for key, coerce in _COERCERS.items():
            if key not in layer:
                continue
            try:
                values[key] = coerce(layer[key])
            except (TypeError, ValueError) as exc:
                logger.warning("Ignoring %s value for %s: %s", rank.value, key, exc)
                continue
            provenance[key] = rank
        for sub, value in _branding_subkeys(layer).items():
            try:
                brand[sub] = _coerce_str(value)
            except ValueError as exc:
                logger.warning("Ignoring %s branding value %s: %s", rank.value, sub, exc)
                continue
            provenance[f"customBranding.{sub}"] = rank
            provenance["customBranding"] = rank

    for key, default in DEFAULT_CONFIG.items():
        if key == "customBranding":
            continue
        if key not in values:
            values[key] = _COERCERS[key](default)
            provenance.setdefault(key, Provenance.DEFAULT)

    branding_values = dict(DEFAULT_BRANDING)
    branding_values.update(brand)
    provenance.setdefault("customBranding", Provenance.DEFAULT)

    return EffectiveConfig(
        custom_rules_url=values["customRulesUrl"],
        update_interval_hours=values["updateInterval"],
        enable_page_blocking=values["enablePageBlocking"],
        enable_cipp_reporting=values["enableCippReporting"],
        cipp_server_url=values["cippServerUrl"],
        cipp_tenant_id=values["cippTenantId"],
        url_allowlist=values["urlAllowlist"],
        extra_trusted_origins=values["extraTrustedOrigins"],
        show_notifications=values["showNotifications"],
        enable_valid_page_badge=values["enableValidPageBadge"],
        enable_debug_logging=values["enableDebugLogging"],
        custom_branding=MappingProxyType(branding_values),
        provenance=MappingProxyType(provenance),
    )


def load_branding_defaults(path: Optional[Path] = None) -> dict:
    """Bundled branding defaults, overlaid by an optional JSON/YAML branding file."""
    data = load_mapping_file(BUNDLED_BRANDING_PATH)
    if path:
        override = load_mapping_file(Path(path))
        if override:
            merged_brand = _branding_subkeys(data)
            merged_brand.update(_branding_subkeys(override))
            data = {**data, **override, "customBranding": merged_brand}
    return data


def _is_default(key: str, value: Any) -> bool:
    try:
        return _COERCERS[key](value) == _COERCERS[key](DEFAULT_CONFIG[key])
    except (TypeError, ValueError):
        return False


class ConfigResolver:
    """Resolves EffectiveConfig from the store, branding defaults and managed policy."""

    def __init__(
        self,
        store: KeyValueStore,
        policy_source: Optional[PolicySource] = None,
        branding: Optional[Mapping[str, Any]] = None,
    ):
        self.store = store
        self.policy_source = policy_source or StaticPolicySource()
        self.branding = dict(branding) if branding is not None else load_branding_defaults()

    async def _local_overrides(self) -> dict:
        stored = await self.store.get(LOCAL_CONFIG_KEY)
        if stored is None:
            return {}
        if not isinstance(stored, dict):
            logger.warning("Stored local config is not an object; ignoring it")
            return {}
        return stored

    async def resolve(self) -> EffectiveConfig:
        """Read all layers and merge them. Never writes."""
        local = await self._local_overrides()
        managed = await self.policy_source.read()
        return merge_layers(DEFAULT_CONFIG, self.branding, local, managed)

    async def update_config(self, partial: Mapping[str, Any]) -> EffectiveConfig:
        """
        Persist user intent to the local layer.

        Only keys that differ from the built-in defaults are stored; an empty
        customRulesUrl removes the override. Keys held by managed policy are
        stored but have no effect until the policy releases them.
        """
        stored = copy.deepcopy(await self._local_overrides())
        managed = await self.policy_source.read()

        for key, value in partial.items():
            if key not in DEFAULT_CONFIG:
                logger.warning("Ignoring unknown config key: %s", key)
                continue
            if key in managed:
                logger.warning("%s is set by managed policy; the local value has no effect", key)
            if key == "customBranding":
                if not isinstance(value, Mapping):
                    logger.warning("Ignoring non-object customBranding update")
                    continue
                brand = dict(stored.get("customBranding") or {})
                brand.update(value)
                stored["customBranding"] = brand
                continue
            if key == "customRulesUrl" and (value is None or str(value).strip() == ""):
                stored.pop(key, None)
                continue
            stored[key] = list(value) if isinstance(value, tuple) else value

        delta = {}
        for key, value in stored.items():
            if key not in DEFAULT_CONFIG:
                continue
            if key == "customBranding":
                brand_delta = {
                    sub: v
                    for sub, v in (value or {}).items()
                    if DEFAULT_BRANDING.get(sub) != v
                }
                if brand_delta:
                    delta[key] = brand_delta
                continue
            if not _is_default(key, value):
                delta[key] = value

        await self.store.set(LOCAL_CONFIG_KEY, delta)
        logger.info("Saved local config overrides: %s", ", ".join(sorted(delta)) or "(none)")
        return merge_layers(DEFAULT_CONFIG, self.branding, delta, managed)

    async def export_config(self) -> dict:
        """Effective settings and branding as a portable document."""
        config = await self.resolve()
        return {
            "config": config.to_dict(),
            "branding": dict(config.custom_branding),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
        }

    async def import_config(self, document: Any) -> EffectiveConfig:
        """
        Apply an exported document to the local layer.

        Goes through update_config, so unknown keys are skipped and keys held
        by managed policy stay ineffective. A top-level "branding" object is
        merged into customBranding.
        """
        if not isinstance(document, Mapping) or not isinstance(document.get("config"), Mapping):
            raise ConfigImportError("invalid configuration format: expected a 'config' object")
        partial = dict(document["config"])
        branding = document.get("branding")
        if branding is not None:
            if not isinstance(branding, Mapping):
                raise ConfigImportError("'branding' must be an object")
            nested = partial.get("customBranding")
            partial["customBranding"] = {**(nested if isinstance(nested, Mapping) else {}), **branding}
        logger.info("Importing configuration exported at %s", document.get("timestamp", "unknown time"))
        return await self.update_config(partial)


# -----------------------------------------------------------------------------
# Process settings
# -----------------------------------------------------------------------------


@dataclass
class Settings:
    """Process settings loaded from the environment."""

    data_dir: Path = field(default_factory=lambda: Path("./data"))
    policy_file: Optional[Path] = None
    branding_file: Optional[Path] = None
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    health_host: str = "127.0.0.1"
    health_port: int = 8081
    health_enabled: bool = True
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "logonguard.db"


def _optional_path(name: str) -> Optional[Path]:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def load_settings() -> Settings:
    """Load process settings from environment variables (and .env)."""
    load_dotenv()

    return Settings(
        data_dir=Path(os.getenv("LOGONGUARD_DATA_DIR", "./data")),
        policy_file=_optional_path("LOGONGUARD_POLICY_FILE"),
        branding_file=_optional_path("LOGONGUARD_BRANDING_FILE"),
        fetch_timeout=float(os.getenv("LOGONGUARD_FETCH_TIMEOUT", str(DEFAULT_FETCH_TIMEOUT_SECONDS))),
        health_host=os.getenv("LOGONGUARD_HEALTH_HOST", "127.0.0.1"),
        health_port=int(os.getenv("LOGONGUARD_HEALTH_PORT", "8081")),
        health_enabled=os.getenv("LOGONGUARD_HEALTH_ENABLED", "true").lower() == "true",
        log_level=os.getenv("LOGONGUARD_LOG_LEVEL", "INFO").upper(),
    )


def validate_settings(settings: Settings) -> list[str]:
    """Validate process settings and return list of error messages."""
    errors: list[str] = []
    if settings.fetch_timeout <= 0:
        errors.append("LOGONGUARD_FETCH_TIMEOUT must be positive")
    if not 0 < settings.health_port < 65536:
        errors.append("LOGONGUARD_HEALTH_PORT must be between 1 and 65535")
    if settings.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        errors.append(f"LOGONGUARD_LOG_LEVEL is not a logging level: {settings.log_level}")
    if settings.policy_file and not Path(settings.policy_file).exists():
        errors.append(f"LOGONGUARD_POLICY_FILE does not exist: {settings.policy_file}")
    if settings.branding_file and not Path(settings.branding_file).exists():
        errors.append(f"LOGONGUARD_BRANDING_FILE does not exist: {settings.branding_file}")
    return errors


def dump_config(config: EffectiveConfig) -> str:
    """Pretty JSON of effective values with their provenance."""
    payload = {
        key: {"value": value, "source": config.source_of(key).value}
        for key, value in config.to_dict().items()
    }
    return json.dumps(payload, indent=2, sort_keys=True)
