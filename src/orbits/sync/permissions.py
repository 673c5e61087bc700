"""Capability probes for the two local data sources."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from orbits.sync.directory import DEFAULT_CONTACTS_ROOT
from orbits.sync.messages import DEFAULT_MESSAGE_ARCHIVE_PATH


@dataclass(frozen=True)
class PermissionStatus:
    directory_access: bool
    archive_access: bool

    @property
    def all_granted(self) -> bool:
        return self.directory_access and self.archive_access

    @property
    def summary(self) -> str:
        if self.all_granted:
            return "All permissions granted"
        missing = []
        if not self.directory_access:
            missing.append("Contacts")
        if not self.archive_access:
            missing.append("Full Disk Access")
        return f"Missing permissions: {', '.join(missing)}"

    @property
    def instructions(self) -> str | None:
        if self.all_granted:
            return None
        lines = []
        if not self.directory_access:
            lines.append(
                "- Grant Contacts access in System Settings > Privacy & Security > Contacts"
            )
        if not self.archive_access:
            lines.extend(
                [
                    "- Grant Full Disk Access in System Settings > Privacy & Security > "
                    "Full Disk Access",
                    "  1. Click the + button",
                    "  2. Add the terminal or app running orbits",
                    "  3. Restart it",
                ]
            )
        return "\n".join(lines)


class PermissionOracle:
    """Answers whether the contacts directory and Messages archive can be read."""

    def __init__(
        self,
        contacts_root: Path = DEFAULT_CONTACTS_ROOT,
        message_archive: Path = DEFAULT_MESSAGE_ARCHIVE_PATH,
    ) -> None:
        self._contacts_root = Path(contacts_root).expanduser()
        self._message_archive = Path(message_archive).expanduser()

    def has_directory_permission(self) -> bool:
        sources = self._contacts_root / "Sources"
        target = sources if sources.is_dir() else self._contacts_root
        try:
            next(target.iterdir(), None)
        except OSError:
            return False
        return True

    def has_archive_permission(self) -> bool:
        return self._message_archive.is_file() and os.access(self._message_archive, os.R_OK)

    def status(self) -> PermissionStatus:
        return PermissionStatus(
            directory_access=self.has_directory_permission(),
            archive_access=self.has_archive_permission(),
        )
