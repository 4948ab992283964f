# lifecycle/config.py
# Watcher configuration read from the environment: endpoint, credential, thresholds, modes.

from __future__ import annotations
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple
import os
import shlex

from reaper.reaper import ACTION_POWEROFF, ACTION_SERVER_STOP, DEFAULT_POWEROFF_COMMAND
from transport.endpoint import Endpoint


class ConfigError(Exception):
    """Unrecoverable configuration problem; fatal before any connection is attempted."""


# ---------- Helpers ----------
# Empty values count as unset, so `FOO=` in an env file keeps the default.
def _get(env: Mapping[str, str], key: str) -> Optional[str]:
    v = env.get(key)
    return v if v not in (None, "") else None

def _to_bool(v: Optional[str], default: bool) -> bool:
    if v is None:
        return default
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "on", "y", "t"}:
        return True
    if s in {"0", "false", "no", "off", "n", "f"}:
        return False
    return default

def _to_int(v: Optional[str], default: int) -> int:
    try:
        return int(v) if v is not None else default
    except Exception:
        return default

def _to_float(v: Optional[str], default: float) -> float:
    try:
        return float(v) if v is not None else default
    except Exception:
        return default

# ---------- Config Dataclass ----------
@dataclass(frozen=True)
class WatcherConfig:
    # Endpoint
    host: str = "localhost"
    port: int = 25566
    secret: str = ""                      # bearer credential, mandatory
    tls_enabled: bool = True
    tls_verify: bool = False              # management servers commonly use self-signed certs

    # Decision thresholds
    idle_timeout_min: int = 10
    min_uptime_min: int = 30
    poll_interval_s: int = 30

    # Terminal action
    test_mode: bool = False               # dry-run: log the action, never perform it
    shutdown_action: str = ACTION_SERVER_STOP
    poweroff_command: Tuple[str, ...] = DEFAULT_POWEROFF_COMMAND

    # Failure policy
    reconnect_on_loss: bool = True
    auth_failure_fatal: bool = False
    rpc_timeout_s: float = 30.0

    # Observability
    metrics_port: int = 0                 # 0 = exporter disabled

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(
            host=self.host, port=self.port, secret=self.secret,
            tls=self.tls_enabled, tls_verify=self.tls_verify,
        )

    def validate(self) -> None:
        if not self.secret:
            raise ConfigError("MINECRAFT_MGMT_SECRET is required")
        if not (0 < self.port < 65536):
            raise ConfigError(f"MINECRAFT_MGMT_PORT out of range: {self.port}")
        if self.idle_timeout_min < 0:
            raise ConfigError(f"IDLE_TIMEOUT_MINUTES must be >= 0, got {self.idle_timeout_min}")
        if self.min_uptime_min < 0:
            raise ConfigError(f"MIN_UPTIME_MINUTES must be >= 0, got {self.min_uptime_min}")
        if self.poll_interval_s <= 0:
            raise ConfigError(f"POLL_INTERVAL_SECONDS must be > 0, got {self.poll_interval_s}")
        if self.rpc_timeout_s <= 0:
            raise ConfigError(f"RPC_TIMEOUT_SECONDS must be > 0, got {self.rpc_timeout_s}")
        if self.shutdown_action not in (ACTION_SERVER_STOP, ACTION_POWEROFF):
            raise ConfigError(
                f"SHUTDOWN_ACTION must be {ACTION_SERVER_STOP!r} or {ACTION_POWEROFF!r}, "
                f"got {self.shutdown_action!r}"
            )
        if self.shutdown_action == ACTION_POWEROFF and not self.poweroff_command:
            raise ConfigError("POWEROFF_COMMAND is empty")

    def describe(self) -> str:
        """One-line summary for the startup log. Never includes the secret."""
        return (
            f"host={self.host}, port={self.port}, tls={str(self.tls_enabled).lower()}, "
            f"idle_timeout={self.idle_timeout_min}m, min_uptime={self.min_uptime_min}m, "
            f"poll_interval={self.poll_interval_s}s, action={self.shutdown_action}, "
            f"reconnect={str(self.reconnect_on_loss).lower()}"
        )

    # ---------- Build config with env overrides ----------
    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WatcherConfig":
        env = os.environ if environ is None else environ
        d = cls()
        cmd = _get(env, "POWEROFF_COMMAND")
        cfg = cls(
            # endpoint
            host=_get(env, "MINECRAFT_MGMT_HOST") or d.host,
            port=_to_int(_get(env, "MINECRAFT_MGMT_PORT"), d.port),
            secret=env.get("MINECRAFT_MGMT_SECRET", "") or "",
            tls_enabled=_to_bool(_get(env, "MINECRAFT_MGMT_TLS_ENABLED"), d.tls_enabled),
            tls_verify=_to_bool(_get(env, "MINECRAFT_MGMT_TLS_VERIFY"), d.tls_verify),
            # thresholds
            idle_timeout_min=_to_int(_get(env, "IDLE_TIMEOUT_MINUTES"), d.idle_timeout_min),
            min_uptime_min=_to_int(_get(env, "MIN_UPTIME_MINUTES"), d.min_uptime_min),
            poll_interval_s=_to_int(_get(env, "POLL_INTERVAL_SECONDS"), d.poll_interval_s),
            # action
            test_mode=_to_bool(_get(env, "TEST_MODE"), d.test_mode),
            shutdown_action=(_get(env, "SHUTDOWN_ACTION") or d.shutdown_action).strip().lower(),
            poweroff_command=tuple(shlex.split(cmd)) if cmd else d.poweroff_command,
            # failure policy
            reconnect_on_loss=_to_bool(_get(env, "RECONNECT_ON_LOSS"), d.reconnect_on_loss),
            auth_failure_fatal=_to_bool(_get(env, "AUTH_FAILURE_FATAL"), d.auth_failure_fatal),
            rpc_timeout_s=_to_float(_get(env, "RPC_TIMEOUT_SECONDS"), d.rpc_timeout_s),
            # observability
            metrics_port=_to_int(_get(env, "METRICS_PORT"), d.metrics_port),
        )
        cfg.validate()
        return cfg
