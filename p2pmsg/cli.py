from __future__ import annotations

import argparse
import os
import sys
import threading
from dataclasses import replace
from pathlib import Path

from .commands import CommandHandler
from .config import ClientRuntimeConfig, apply_config_data, load_toml
from .events import ActiveRoomChanged, Event
from .invite import parse_invite
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_home_dir,
    default_identity_path,
    default_storage_dir,
    ensure_private_dir,
)
from .service import ChatService, event_line
from .storage import FileStorage
from .transport import LoopbackNetwork, Transport
from .util import normalize_handle


def _write_default_config(config_path: str, storage_dir: str, identity_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))
    ensure_private_dir(Path(storage_dir))

    content = f"""# p2pmsg configuration (TOML)
#
# This file was created on first run.
# Edit it, then start p2pmsg again.

[client]

# Your handle (2-20 characters). Leave empty to be asked on start.
handle = ""

# Where rooms, message history and your profile are stored.
# Two clients pointed at the same directory see each other's changes.
storage_dir = {storage_dir!r}

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Reticulum identity used for room destinations (created if missing).
identity_path = {identity_path!r}

# Messages kept per room (oldest dropped first).
history_cap = 50

# Storage quota in bytes across all snapshots (0 disables).
# When history does not fit, whole rooms are evicted, least recently active first.
storage_max_bytes = {5 * 1024 * 1024}

# How often to look for changes written by another client.
storage_poll_interval_s = 1.0

# Lines kept visible by /history.
transcript_height = 20

# Prefix for links printed by /invite.
invite_base_url = "p2pmsg://join"

# Re-announce the active room every N seconds (0 disables).
announce_period_s = 300.0

[logging]

# Log level for p2pmsg itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr. While chatting, only warnings and errors reach the console.
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="p2pmsg", description="Serverless room chat over Reticulum")

    p.add_argument("--home", default=None, help="Base directory (default: $P2PMSG_HOME or ~/.p2pmsg)")
    p.add_argument(
        "--config",
        default=None,
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--storage-dir", default=None, help="Directory for rooms, history and profile")
    p.add_argument("--handle", default=None, help="Handle to use (2-20 characters)")
    p.add_argument("--invite", default=None, help="Invite link or fragment to join on start")
    p.add_argument(
        "--loopback",
        action="store_true",
        help="Use an in-process network instead of Reticulum (for trying things out)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> tuple[ClientRuntimeConfig, bool]:
    """Resolve the runtime config. The flag is True if a default config was just written."""
    home = Path(args.home).expanduser() if args.home else default_home_dir()
    config_path = str(args.config or default_config_path(home))

    if not os.path.exists(config_path):
        _write_default_config(
            config_path,
            str(args.storage_dir or default_storage_dir(home)),
            str(default_identity_path(home)),
        )
        return ClientRuntimeConfig(config_path=config_path), True

    cfg = ClientRuntimeConfig(
        config_path=config_path,
        storage_dir=str(default_storage_dir(home)),
        identity_path=str(default_identity_path(home)),
    )
    cfg = apply_config_data(cfg, load_toml(config_path))

    if args.storage_dir is not None:
        cfg = replace(cfg, storage_dir=str(args.storage_dir))
    if args.configdir is not None:
        cfg = replace(cfg, configdir=str(args.configdir))
    if args.handle is not None:
        cfg = replace(cfg, handle=str(args.handle))
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg, False


def _make_transport(cfg: ClientRuntimeConfig, loopback: bool, lock: threading.RLock) -> Transport:
    if loopback:
        return LoopbackNetwork(autorun=True).transport()

    from .rns_transport import RnsTransport

    return RnsTransport(
        configdir=cfg.configdir,
        identity_path=cfg.identity_path,
        lock=lock,
        announce_period_s=cfg.announce_period_s,
    )


def _prompt_handle() -> str:
    while True:
        try:
            value = input("Choose a handle (2-20 characters): ")
        except EOFError:
            raise SystemExit(1) from None
        handle = normalize_handle(value)
        if handle is not None:
            return handle
        print("That handle is not valid.", file=sys.stderr)


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    cfg, created = build_config(args)
    if created:
        print(
            "Created default p2pmsg config. Review it before starting:\n"
            f"- Config: {cfg.config_path}\n"
            "\nThen re-run p2pmsg.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    configure_logging(
        cfg,
        override_level=args.log_level,
        override_file=args.log_file,
        interactive=True,
    )

    invite = parse_invite(args.invite) if args.invite else None
    if args.invite and invite is None:
        print(f"Invite has no room: {args.invite}", file=sys.stderr)
        raise SystemExit(2)

    storage_dir = cfg.storage_dir or str(default_storage_dir())
    ensure_private_dir(Path(storage_dir))
    storage = FileStorage(storage_dir, max_bytes=cfg.storage_max_bytes)

    lock = threading.RLock()
    transport = _make_transport(cfg, args.loopback, lock)

    svc: ChatService | None = None
    print_lock = threading.Lock()

    def show(line: str) -> None:
        with print_lock:
            print(line, flush=True)

    def on_event(event: Event) -> None:
        if svc is None:
            return
        if isinstance(event, ActiveRoomChanged):
            for line in svc.transcript.visible():
                show(line)
            return
        line = event_line(event, svc.active_room.key)
        if line is not None:
            show(line)

    svc = ChatService(cfg, storage=storage, transport=transport, listener=on_event, lock=lock)
    svc.load_state()
    if not normalize_handle(cfg.handle) and svc.handle is None and not (invite and invite.name):
        cfg = replace(cfg, handle=_prompt_handle())
        svc.config = cfg

    commands = CommandHandler(svc, out=show)

    try:
        svc.start(invite)
        show("* Type /help for commands.")
        while not commands.quit_requested:
            try:
                line = input()
            except EOFError:
                break
            if not line.strip():
                continue
            if commands.handle(line):
                continue
            svc.send(line)
    except KeyboardInterrupt:
        pass
    finally:
        svc.stop()


if __name__ == "__main__":
    main()
