# src/peerlink/config.py
"""
PeerLink configuration.

Sources, lowest precedence first:
  1) dataclass defaults
  2) YAML file (path argument, else PEERLINK_CONFIG_PATH)
  3) PEERLINK_* environment variables

YAML keys are the dataclass field names. Environment variables are the upper
cased field names with a PEERLINK_ prefix, e.g. PEERLINK_CONNECT_TIMEOUT_S.

Fail-closed:
  - a missing user id or identity seed is a ConfigError (fatal, never retried)
  - unparsable numeric values are a ConfigError rather than a silent default
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from peerlink.errors import ConfigError

Json = Dict[str, Any]

DEFAULT_STUN_SERVERS: Tuple[Tuple[str, int], ...] = (
    ("stun.l.google.com", 19302),
    ("stun1.l.google.com", 19302),
    ("stun2.l.google.com", 19302),
    ("stun.stunprotocol.org", 3478),
    ("stun.nextcloud.com", 3478),
)


@dataclass(frozen=True, slots=True)
class PeerlinkConfig:
    # identity
    user_id: str
    display_name: str = ""
    identity_seed_hex: str = field(default="", repr=False)

    # listener
    listen_host: str = "0.0.0.0"
    listen_port: int = 8765
    local_port: int = 0

    # collaborators
    directory_base_url: str = ""
    relay_api_base_url: str = ""
    relay_public_key_b64: str = ""
    stun_servers: Tuple[Tuple[str, int], ...] = DEFAULT_STUN_SERVERS
    http_timeout_s: float = 10.0

    # NAT traversal
    connect_timeout_s: float = 5.0
    stun_timeout_s: float = 5.0
    udp_punch_count: int = 5
    udp_punch_interval_s: float = 0.2
    udp_retry_wait_s: float = 1.0
    tcp_punch_attempts: int = 5
    tcp_punch_delay_s: float = 0.5
    tcp_punch_timeout_s: float = 2.0
    relay_connect_timeout_s: float = 10.0
    establish_deadline_s: float = 40.0

    # session
    handshake_timeout_s: float = 5.0
    handshake_max_skew_s: float = 300.0
    read_timeout_s: float = 5.0
    ping_interval_s: float = 30.0
    stale_after_s: float = 90.0
    max_line_bytes: int = 1024 * 1024
    challenge_timeout_s: float = 10.0

    # relay framing
    max_control_frame_bytes: int = 10 * 1024
    max_data_frame_bytes: int = 1024 * 1024

    # delivery
    db_path: str = "./data/peerlink.db"
    message_ttl_s: float = 7 * 24 * 3600.0
    retry_interval_s: float = 300.0
    retry_pause_s: float = 0.5
    expiry_sweep_interval_s: float = 6 * 3600.0
    attempt_timeout_s: float = 60.0
    receipt_timeout_s: float = 10.0
    delivery_workers: int = 4

    # api
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    log_level: str = "INFO"

    @property
    def identity_seed(self) -> bytes:
        try:
            seed = bytes.fromhex(self.identity_seed_hex.strip())
        except ValueError as e:
            raise ConfigError("identity seed is not valid hex") from e
        if len(seed) != 32:
            raise ConfigError("identity seed must be 32 bytes", {"len": len(seed)})
        return seed


_FIELD_TYPES: Dict[str, str] = {f.name: str(f.type) for f in fields(PeerlinkConfig)}


def _coerce(name: str, raw: Any) -> Any:
    kind = _FIELD_TYPES[name]
    try:
        if kind == "int":
            if isinstance(raw, bool):
                raise ValueError("bool not allowed")
            return int(raw)
        if kind == "float":
            if isinstance(raw, bool):
                raise ValueError("bool not allowed")
            return float(raw)
        if name == "stun_servers":
            return _parse_stun_servers(raw)
        return str(raw).strip()
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for {name}", {"value": raw}) from e


def _parse_stun_servers(raw: Any) -> Tuple[Tuple[str, int], ...]:
    """Accept "host:port,host:port" or a YAML list of "host:port" / [host, port]."""
    items: list[Any]
    if isinstance(raw, str):
        items = [p.strip() for p in raw.split(",") if p.strip()]
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        raise ValueError("stun_servers must be a string or list")

    out: list[Tuple[str, int]] = []
    for it in items:
        if isinstance(it, str):
            host, port_s = it.rsplit(":", 1)
            out.append((host.strip(), int(port_s)))
        elif isinstance(it, (list, tuple)) and len(it) == 2:
            out.append((str(it[0]).strip(), int(it[1])))
        else:
            raise ValueError(f"bad stun server entry: {it!r}")
    return tuple(out)


def _read_yaml(path: Path) -> Json:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError("could not read config file", {"path": str(path)}) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping", {"path": str(path)})
    unknown = sorted(k for k in data if k not in _FIELD_TYPES)
    if unknown:
        raise ConfigError("unknown config keys", {"keys": unknown})
    return data


def _env_overrides(environ: Optional[Dict[str, str]] = None) -> Json:
    env = os.environ if environ is None else environ
    out: Json = {}
    for name in _FIELD_TYPES:
        v = env.get("PEERLINK_" + name.upper())
        if v is not None and v.strip() != "":
            out[name] = v
    return out


def _seed_from_path(path_s: str) -> str:
    try:
        return Path(path_s).expanduser().read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigError("could not read identity seed file", {"path": path_s}) from e


def load_config(path: Optional[str] = None, *, environ: Optional[Dict[str, str]] = None) -> PeerlinkConfig:
    """Build a PeerlinkConfig from YAML + environment. Raises ConfigError."""
    env = os.environ if environ is None else environ

    raw: Json = {}
    cfg_path = path or env.get("PEERLINK_CONFIG_PATH")
    if cfg_path:
        raw.update(_read_yaml(Path(cfg_path).expanduser()))
    raw.update(_env_overrides(env))

    if "identity_seed_hex" not in raw:
        seed_path = env.get("PEERLINK_IDENTITY_SEED_PATH")
        if seed_path:
            raw["identity_seed_hex"] = _seed_from_path(seed_path)
        elif env.get("PEERLINK_IDENTITY_SEED"):
            raw["identity_seed_hex"] = env["PEERLINK_IDENTITY_SEED"]

    values = {k: _coerce(k, v) for k, v in raw.items()}

    user_id = str(values.pop("user_id", "") or "").strip()
    if not user_id:
        raise ConfigError("missing user_id (PEERLINK_USER_ID)")
    if not str(values.get("identity_seed_hex") or "").strip():
        raise ConfigError("missing local identity key (PEERLINK_IDENTITY_SEED or PEERLINK_IDENTITY_SEED_PATH)")

    cfg = PeerlinkConfig(user_id=user_id, **values)
    if not cfg.display_name:
        cfg = replace(cfg, display_name=user_id)

    # Validate eagerly so a bad seed fails at startup.
    _ = cfg.identity_seed
    return cfg
