from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


# -----------------------------
# Exceptions
# -----------------------------
class ConfigError(ValueError):
    """Raised when the environment cannot form a valid Settings."""


# -----------------------------
# Constants
# -----------------------------
DEFAULT_PORT = 8080
DEFAULT_WATCH_TIMEOUT_SEC = 60
DEFAULT_TIMER_INTERVAL_SEC = 300
DEFAULT_PUSHBULLET_BASE_URL = "https://api.pushbullet.com/"

_STORAGE_ENV_NAMES = ("APP_STORAGECONNECTIONSTRING", "AzureWebJobsStorage")
_TOKEN_ENV = "APP_PUSHBULLETACCESSTOKEN"
_PORT_ENV = "FUNCTIONS_CUSTOMHANDLER_PORT"

# Per-watch settings, scanned as APP_{i}_<SUFFIX> for i = 0, 1, 2, ...
_WATCH_SUFFIXES = ("TABLENAME", "TARGETURL", "STRINGARRAYJS", "WAITSECONDS", "NOTIFICATIONTITLE")
# Older deployments name the table setting APP_{i}_AZURESTORAGETABLENAME.
_WATCH_SUFFIX_FALLBACKS = {"TABLENAME": ("AZURESTORAGETABLENAME",)}

# Azure Table Storage naming rule; also keeps names safe as SQL identifiers.
_TABLE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]{2,62}$")


# -----------------------------
# Models
# -----------------------------
@dataclass(frozen=True)
class WatchConfig:
    """
    One watch: render `target_url`, wait `wait_seconds`, evaluate `extraction_script`,
    dedupe against `table_name`, notify with `notification_title`.
    """

    table_name: str
    target_url: str
    extraction_script: str
    wait_seconds: int
    notification_title: str
    index: int = 0


@dataclass(frozen=True)
class Settings:
    """
    Process-wide configuration, read once at startup and never mutated.
    """

    storage_path: str
    pushbullet_token: str = field(repr=False)
    watches: tuple[WatchConfig, ...]
    port: int = DEFAULT_PORT
    pushbullet_base_url: str = DEFAULT_PUSHBULLET_BASE_URL
    chromium_path: str | None = None
    watch_timeout_sec: int = DEFAULT_WATCH_TIMEOUT_SEC
    timer_cron: str | None = None
    timer_interval_sec: int = DEFAULT_TIMER_INTERVAL_SEC

    # ------------- constructors -------------
    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """
        Build Settings from environment variables.

        Required:
            APP_STORAGECONNECTIONSTRING (or AzureWebJobsStorage)  # SQLite path, 'sqlite:///' accepted
            APP_PUSHBULLETACCESSTOKEN
            APP_0_TABLENAME / _TARGETURL / _STRINGARRAYJS / _WAITSECONDS / _NOTIFICATIONTITLE

        Optional:
            FUNCTIONS_CUSTOMHANDLER_PORT = 8080
            APP_PUSHBULLETBASEURL, APP_CHROMIUMPATH
            APP_WATCHTIMEOUTSECONDS = 60
            APP_TIMERCRON | APP_TIMERINTERVALSECONDS = 300
        """
        env = os.environ if environ is None else environ

        raw_storage = _first_present(env, _STORAGE_ENV_NAMES)
        if not raw_storage:
            raise ConfigError(f"{_STORAGE_ENV_NAMES[0]} not set.")
        storage_path = _storage_path_from_connection_string(raw_storage)

        token = (env.get(_TOKEN_ENV) or "").strip()
        if not token:
            raise ConfigError(f"{_TOKEN_ENV} not set.")

        watches = load_watches(env)
        if not watches:
            raise ConfigError("No watches found (expected APP_0_TABLENAME and friends).")
        _warn_duplicate_tables(watches)

        timer_cron = (env.get("APP_TIMERCRON") or "").strip() or None

        settings = cls(
            storage_path=storage_path,
            pushbullet_token=token,
            watches=tuple(watches),
            port=_to_int(env.get(_PORT_ENV), field=_PORT_ENV, default=DEFAULT_PORT, allow_zero=False),
            pushbullet_base_url=(env.get("APP_PUSHBULLETBASEURL") or "").strip() or DEFAULT_PUSHBULLET_BASE_URL,
            chromium_path=(env.get("APP_CHROMIUMPATH") or "").strip() or None,
            watch_timeout_sec=_to_int(
                env.get("APP_WATCHTIMEOUTSECONDS"),
                field="APP_WATCHTIMEOUTSECONDS",
                default=DEFAULT_WATCH_TIMEOUT_SEC,
                allow_zero=False,
            ),
            timer_cron=timer_cron,
            timer_interval_sec=_to_int(
                env.get("APP_TIMERINTERVALSECONDS"),
                field="APP_TIMERINTERVALSECONDS",
                default=DEFAULT_TIMER_INTERVAL_SEC,
                allow_zero=False,
            ),
        )
        return settings


# -----------------------------
# Helpers
# -----------------------------
def load_watches(env: Mapping[str, str]) -> list[WatchConfig]:
    """
    Scan ordinals 0, 1, 2, ... and stop at the first ordinal missing any required setting.
    """
    out: list[WatchConfig] = []
    i = 0
    while True:
        values: dict[str, str] = {}
        for suffix in _WATCH_SUFFIXES:
            v = _watch_setting(env, i, suffix)
            if v is None:
                break
            values[suffix] = v
        if len(values) != len(_WATCH_SUFFIXES):
            break

        table_name = values["TABLENAME"].strip()
        if not _TABLE_NAME_RE.match(table_name):
            raise ConfigError(
                f"APP_{i}_TABLENAME={table_name!r} must be 3-63 alphanumeric characters starting with a letter."
            )

        out.append(
            WatchConfig(
                table_name=table_name,
                target_url=values["TARGETURL"].strip(),
                extraction_script=values["STRINGARRAYJS"],
                wait_seconds=_to_int(values["WAITSECONDS"], field=f"APP_{i}_WAITSECONDS", allow_zero=True),
                notification_title=values["NOTIFICATIONTITLE"],
                index=i,
            )
        )
        i += 1
    return out


def _watch_setting(env: Mapping[str, str], i: int, suffix: str) -> str | None:
    for s in (suffix, *_WATCH_SUFFIX_FALLBACKS.get(suffix, ())):
        v = env.get(f"APP_{i}_{s}")
        if v is not None:
            return v
    return None


def _first_present(env: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for n in names:
        v = env.get(n)
        if v is not None and v.strip():
            return v.strip()
    return None


def _storage_path_from_connection_string(value: str) -> str:
    if value.startswith("sqlite:///"):
        value = value[len("sqlite:///") :]
    if not value:
        raise ConfigError("Storage connection string resolves to an empty path.")
    return value


def _warn_duplicate_tables(watches: list[WatchConfig]) -> None:
    seen: dict[str, int] = {}
    for w in watches:
        if w.table_name in seen:
            logger.warning(
                "Watches %d and %d share table %r; their dedup state will interfere.",
                seen[w.table_name],
                w.index,
                w.table_name,
            )
        else:
            seen[w.table_name] = w.index


def _to_int(value: str | None, *, field: str, default: int | None = None, allow_zero: bool) -> int:
    if value is None or not str(value).strip():
        if default is None:
            raise ConfigError(f"'{field}' is required.")
        return default
    try:
        iv = int(str(value).strip())
    except ValueError as err:
        raise ConfigError(f"'{field}' must be an integer (got {value!r}).") from err
    if iv < 0 or (iv == 0 and not allow_zero):
        raise ConfigError(f"'{field}' must be >= {'0' if allow_zero else '1'} (got {iv}).")
    return iv
