"""Slash commands typed into the p2pmsg client."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from .invite import parse_invite
from .transcript import render_system
from .util import truncate

if TYPE_CHECKING:
    from p2pmsg.service import ChatService

HELP_TEXT = """Commands:
  /join <room> [secret]   join (or create) a room
  /join <invite-url>      join from an invite link
  /switch <room>[@owner]  switch to a joined room
  /leave                  leave the active room
  /rooms                  list rooms with unread counts
  /rename <name>          rename the active room locally
  /invite [name]          print an invite link for the active room
  /nick <handle>          change your handle
  /who                    list identified peers
  /stats                  show client counters
  /history                reprint the visible transcript
  /help                   this text
  /quit                   exit
Anything else is sent as chat."""


class CommandHandler:
    """Handles slash commands for the interactive client."""

    def __init__(self, service: ChatService, out: Callable[[str], None] = print) -> None:
        self.service = service
        self.out = out
        self.log = logging.getLogger("p2pmsg.commands")
        self.quit_requested = False

    def _say(self, text: str) -> None:
        for line in text.splitlines() or [""]:
            self.out(render_system(line))

    def handle(self, text: str) -> bool:
        """Handle one input line.

        Returns True if the line was a command. Anything else should be sent
        as chat.
        """
        cmdline = text.strip()
        if not cmdline.startswith("/"):
            return False

        parts = [p for p in cmdline[1:].split() if p]
        if not parts:
            return False

        cmd = parts[0].lower()
        args = parts[1:]

        try:
            self._dispatch(cmd, args, cmdline)
        except (ValueError, KeyError) as e:
            msg = e.args[0] if e.args else str(e)
            self._say(f"Error: {msg}")
        return True

    def _dispatch(self, cmd: str, args: list[str], cmdline: str) -> None:
        svc = self.service

        if cmd in ("quit", "exit"):
            self.quit_requested = True
            return

        if cmd == "help":
            self._say(HELP_TEXT)
            return

        if cmd == "join":
            if not args:
                self._say("usage: /join <room> [secret]")
                return
            if "#" in args[0] or args[0].startswith("room="):
                invite = parse_invite(args[0])
                if invite is None:
                    self._say("invite link has no room")
                    return
                svc.join_invite(invite)
                return
            svc.join(args[0], secret=args[1] if len(args) >= 2 else "")
            return

        if cmd == "switch":
            if not args:
                self._say("usage: /switch <room>[@owner]")
                return
            try:
                svc.switch(args[0])
            except KeyError:
                self._say(f"not joined to {args[0]}; use /join")
            return

        if cmd in ("leave", "part"):
            room = svc.active_room
            if room.is_personal:
                self._say("the personal room cannot be left")
                return
            svc.leave()
            self._say(f"Left #{room.id}")
            return

        if cmd in ("rooms", "list"):
            active = svc.active_room
            lines = ["Rooms:"]
            for room, unread in svc.room_summaries():
                mark = "*" if room.identity == active.identity else " "
                flags = []
                if room.secret:
                    flags.append("private")
                if unread:
                    flags.append(f"{unread} unread")
                suffix = f" ({', '.join(flags)})" if flags else ""
                lines.append(f" {mark} {room.key} - {truncate(room.name, 32)}{suffix}")
            self._say("\n".join(lines))
            return

        if cmd == "rename":
            name = cmdline.split(None, 1)[1] if len(args) >= 1 else ""
            if svc.active_room.is_personal:
                self._say("the personal room cannot be renamed")
                return
            room = svc.rename(name)
            self._say(f"Renamed #{room.id} to {room.name}")
            return

        if cmd == "invite":
            url = svc.invite_url(suggested_name=args[0] if args else None)
            self._say(f"Invite link: {url}")
            return

        if cmd == "nick":
            if not args:
                self._say(f"Your handle is {svc.handle}")
                return
            handle = svc.set_handle(" ".join(args))
            self._say(f"You are now {handle}")
            return

        if cmd in ("who", "names"):
            peers = svc.peers()
            if not peers:
                self._say("No peers identified")
                return
            lines = [f"Peers in #{svc.active_room.id}:"]
            for p in sorted(peers, key=lambda r: r.handle.lower()):
                lines.append(f"  {p.handle} ({p.peer_id[:12]})")
            self._say("\n".join(lines))
            return

        if cmd == "stats":
            self._say(svc.format_stats())
            return

        if cmd == "history":
            with svc.state_lock:
                lines = svc.transcript.visible()
            for line in lines:
                self.out(line)
            return

        self._say(f"unknown command /{cmd}; try /help")
