from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from .constants import APP_ID, HISTORY_CAP


@dataclass(frozen=True)
class ClientRuntimeConfig:
    config_path: str | None = None
    storage_dir: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    app_id: str = APP_ID
    handle: str | None = None
    history_cap: int = HISTORY_CAP
    storage_max_bytes: int = 5 * 1024 * 1024
    storage_poll_interval_s: float = 1.0
    transcript_height: int = 20
    invite_base_url: str = "p2pmsg://join"
    announce_period_s: float = 300.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: ClientRuntimeConfig, data: Any) -> ClientRuntimeConfig:
    """Overlay a parsed TOML document onto ``cfg``.

    ``[client]`` keys map to fields directly; ``[logging]`` keys map to the
    ``log_*`` fields.
    """
    if not isinstance(data, dict):
        return cfg

    client = data.get("client")
    if isinstance(client, dict):
        data = {**data, **client}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for src, dst in (
            ("level", "log_level"),
            ("rns_level", "log_rns_level"),
            ("console", "log_console"),
            ("file", "log_file"),
            ("format", "log_format"),
            ("datefmt", "log_datefmt"),
        ):
            if src in log_table:
                mapped[dst] = log_table.get(src)
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where the config was loaded from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for key in ("storage_dir", "configdir", "identity_path", "handle", "log_file", "log_datefmt"):
        if key in updates and updates[key] == "":
            updates[key] = None

    for key in ("history_cap", "storage_max_bytes", "transcript_height"):
        if key in updates:
            try:
                updates[key] = int(updates[key])
            except (TypeError, ValueError):
                updates.pop(key)

    for key in ("storage_poll_interval_s", "announce_period_s"):
        if key in updates:
            try:
                updates[key] = float(updates[key])
            except (TypeError, ValueError):
                updates.pop(key)

    return replace(cfg, **updates) if updates else cfg
