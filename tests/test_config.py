from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from peerlink.config import DEFAULT_STUN_SERVERS, load_config
from peerlink.errors import ConfigError
from peerlink.net.net_logging import log_event

SEED = "11" * 32


def _env(**kw: str) -> dict:
    base = {"PEERLINK_USER_ID": "alice", "PEERLINK_IDENTITY_SEED": SEED}
    base.update(kw)
    return base


def test_defaults_from_minimal_environment() -> None:
    cfg = load_config(environ=_env())
    assert cfg.user_id == "alice"
    assert cfg.display_name == "alice"
    assert cfg.identity_seed == bytes.fromhex(SEED)
    assert cfg.stun_servers == DEFAULT_STUN_SERVERS
    assert cfg.establish_deadline_s == 40.0
    assert cfg.message_ttl_s == 7 * 24 * 3600.0
    assert cfg.max_control_frame_bytes == 10 * 1024


def test_missing_identity_is_fatal() -> None:
    with pytest.raises(ConfigError):
        load_config(environ={"PEERLINK_USER_ID": "alice"})
    with pytest.raises(ConfigError):
        load_config(environ={"PEERLINK_IDENTITY_SEED": SEED})


def test_bad_seed_is_rejected_at_load() -> None:
    with pytest.raises(ConfigError):
        load_config(environ=_env(PEERLINK_IDENTITY_SEED="zz"))
    with pytest.raises(ConfigError):
        load_config(environ=_env(PEERLINK_IDENTITY_SEED="11" * 16))


def test_seed_can_come_from_file(tmp_path: Path) -> None:
    p = tmp_path / "seed.hex"
    p.write_text(SEED + "\n", encoding="utf-8")
    cfg = load_config(environ={"PEERLINK_USER_ID": "alice", "PEERLINK_IDENTITY_SEED_PATH": str(p)})
    assert cfg.identity_seed == bytes.fromhex(SEED)

    with pytest.raises(ConfigError):
        load_config(environ={"PEERLINK_USER_ID": "alice", "PEERLINK_IDENTITY_SEED_PATH": str(tmp_path / "missing")})


def test_yaml_then_environment_precedence(tmp_path: Path) -> None:
    p = tmp_path / "peerlink.yaml"
    p.write_text(
        "display_name: Alice\n"
        "listen_port: 9000\n"
        "retry_interval_s: 60\n"
        "stun_servers:\n"
        "  - stun.example.net:3478\n"
        "  - [stun2.example.net, 19302]\n",
        encoding="utf-8",
    )
    cfg = load_config(str(p), environ=_env(PEERLINK_LISTEN_PORT="9100"))
    assert cfg.display_name == "Alice"
    assert cfg.listen_port == 9100
    assert cfg.retry_interval_s == 60.0
    assert cfg.stun_servers == (("stun.example.net", 3478), ("stun2.example.net", 19302))


def test_config_path_from_environment(tmp_path: Path) -> None:
    p = tmp_path / "peerlink.yaml"
    p.write_text("udp_punch_count: 7\n", encoding="utf-8")
    cfg = load_config(environ=_env(PEERLINK_CONFIG_PATH=str(p)))
    assert cfg.udp_punch_count == 7


def test_unknown_yaml_keys_are_rejected(tmp_path: Path) -> None:
    p = tmp_path / "peerlink.yaml"
    p.write_text("listen_prot: 9000\n", encoding="utf-8")
    with pytest.raises(ConfigError) as ei:
        load_config(str(p), environ=_env())
    assert ei.value.details == {"keys": ["listen_prot"]}


def test_unparsable_numbers_fail_closed() -> None:
    with pytest.raises(ConfigError):
        load_config(environ=_env(PEERLINK_CONNECT_TIMEOUT_S="fast"))


def test_stun_servers_from_environment() -> None:
    cfg = load_config(environ=_env(PEERLINK_STUN_SERVERS="a.example:1, b.example:2"))
    assert cfg.stun_servers == (("a.example", 1), ("b.example", 2))


def test_log_event_emits_one_json_object(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("peerlink.test")
    with caplog.at_level(logging.INFO, logger="peerlink.test"):
        log_event(logger, "thing_happened", peer_id="bob", key=b"\x00" * 4, reasons=(("a", "b"),))
    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "thing_happened"
    assert payload["peer_id"] == "bob"
    assert payload["key"] == "<4 bytes>"
    assert payload["reasons"] == [["a", "b"]]
