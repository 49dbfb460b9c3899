from __future__ import annotations

import os
from pathlib import Path


def default_home_dir() -> Path:
    override = os.environ.get("P2PMSG_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".p2pmsg"


def default_config_path(home: Path | None = None) -> Path:
    return (home or default_home_dir()) / "p2pmsg.toml"


def default_identity_path(home: Path | None = None) -> Path:
    return (home or default_home_dir()) / "identity"


def default_storage_dir(home: Path | None = None) -> Path:
    return (home or default_home_dir()) / "state"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        pass
