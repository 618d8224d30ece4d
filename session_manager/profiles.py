"""
Durable per-user browser profiles.

A user key is derived from whatever identifier the caller supplies (email,
username, ...). The profile directory for that key is mounted into every
browser container started for the same identity, so cookies, history and
downloads survive container destruction.

Profile metadata (identifier, last use, session count) is kept in memory and
persisted to a JSON index next to the profile directories.
"""

import asyncio
import hashlib
import json
import logging
import os
import weakref
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import aiofiles.os

from session_manager.errors import InvalidRequest, StorageFailure

logger = logging.getLogger(__name__)

USER_KEY_LENGTH = 16

# Profile directory layout (mirrors a fresh Chromium user-data-dir)
DOWNLOADS_DIR = "Downloads"
DEFAULT_CONFIG_DIR = "Default"
PREFERENCES_FILE = "Preferences"
FIRST_RUN_MARKER = "First Run"
INITIALIZED_MARKER = ".profile-initialized"

# uid of the browser user inside the runtime image
RUNTIME_UID = 1000


def derive_user_key(identifier: str) -> str:
    """Map a caller-supplied identifier to a stable opaque user key."""
    if not identifier:
        raise InvalidRequest("User identifier must be a non-empty string")
    digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
    return digest[:USER_KEY_LENGTH]


def default_preferences(download_dir: str) -> dict:
    """Default browser configuration written into a new profile."""
    return {
        "browser": {"check_default_browser": False, "has_seen_welcome_page": True},
        "download": {
            "default_directory": download_dir,
            "directory_upgrade": True,
            "prompt_for_download": False,
        },
        "profile": {"exit_type": "Normal", "exited_cleanly": True},
        "session": {"restore_on_startup": 1},
    }


@dataclass
class UserProfile:
    user_key: str
    raw_identifier: str
    last_used: datetime
    session_count: int = 0

    def to_dict(self) -> dict:
        return {
            "userId": self.user_key,
            "userIdentifier": self.raw_identifier,
            "lastUsed": self.last_used.isoformat(),
            "sessionsCount": self.session_count,
        }


class ProfileStore:
    """
    Profile directories on disk plus the in-memory profile table.

    ensure_profile() is serialized per user key so concurrent session requests
    for the same identity materialize the directory exactly once.
    """

    def __init__(
        self,
        profiles_dir: Path,
        index_path: Optional[Path] = None,
        runtime_download_dir: str = "/home/chrome/profile/Downloads",
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._profiles_dir = Path(profiles_dir)
        self._index_path = index_path
        self._runtime_download_dir = runtime_download_dir
        self._clock = clock
        self._profiles: dict[str, UserProfile] = {}
        # Entries vanish once no ensure_profile() call holds the lock
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._load()

    # ------------------------------------------------------------------
    # Index persistence
    # ------------------------------------------------------------------

    def _load(self):
        if not self._index_path or not self._index_path.exists():
            return
        try:
            with open(self._index_path) as f:
                raw = json.load(f)
            for user_key, data in raw.items():
                self._profiles[user_key] = UserProfile(
                    user_key=user_key,
                    raw_identifier=data["identifier"],
                    last_used=datetime.fromisoformat(data["last_used"]),
                    session_count=int(data["session_count"]),
                )
        except (json.JSONDecodeError, OSError, AttributeError, KeyError, ValueError) as e:
            logger.error(f"Failed to load profile index {self._index_path}: {e}")
            self._profiles = {}

    def _save(self):
        if not self._index_path:
            return
        data = {
            key: {
                "identifier": p.raw_identifier,
                "last_used": p.last_used.isoformat(),
                "session_count": p.session_count,
            }
            for key, p in self._profiles.items()
        }
        try:
            self._index_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._index_path.with_suffix(".tmp")
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            tmp_path.replace(self._index_path)
        except OSError as e:
            # The in-memory table stays authoritative for this process
            logger.error(f"Failed to save profile index {self._index_path}: {e}")

    # ------------------------------------------------------------------
    # Durable profile directories
    # ------------------------------------------------------------------

    def profile_path(self, user_key: str) -> Path:
        return self._profiles_dir / user_key

    def downloads_path(self, user_key: str) -> Path:
        return self.profile_path(user_key) / DOWNLOADS_DIR

    def _key_lock(self, user_key: str) -> asyncio.Lock:
        lock = self._key_locks.get(user_key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[user_key] = lock
        return lock

    async def ensure_profile(self, user_key: str, identifier: str) -> bool:
        """
        Materialize the profile directory for user_key if it does not exist.

        Returns True if this call created it. The initialized marker is
        written last, so an interrupted materialization is completed by the
        next call.
        """
        async with self._key_lock(user_key):
            path = self.profile_path(user_key)
            if await aiofiles.os.path.exists(path / INITIALIZED_MARKER):
                return False
            try:
                await self._materialize(path)
            except OSError as e:
                raise StorageFailure(f"Failed to create profile for {user_key}: {e}") from e
            logger.info(f"Created new user profile for: {identifier} ({user_key})")
            return True

    async def _materialize(self, path: Path) -> None:
        downloads = path / DOWNLOADS_DIR
        config_dir = path / DEFAULT_CONFIG_DIR
        await aiofiles.os.makedirs(downloads, exist_ok=True)
        await aiofiles.os.makedirs(config_dir, exist_ok=True)

        prefs = default_preferences(self._runtime_download_dir)
        async with aiofiles.open(config_dir / PREFERENCES_FILE, "w") as f:
            await f.write(json.dumps(prefs, indent=2))
        async with aiofiles.open(path / FIRST_RUN_MARKER, "w") as f:
            await f.write("")

        # The browser user inside the container needs to write here
        if hasattr(os, "geteuid") and os.geteuid() == 0:
            for p in (path, downloads, config_dir):
                os.chown(p, RUNTIME_UID, RUNTIME_UID)
                os.chmod(p, 0o755)

        async with aiofiles.open(path / INITIALIZED_MARKER, "w") as f:
            await f.write(self._clock().isoformat())

    # ------------------------------------------------------------------
    # Profile table
    # ------------------------------------------------------------------

    def record_usage(self, user_key: str, identifier: str) -> UserProfile:
        """Count a new session for user_key. Creates the record on first use."""
        now = self._clock()
        profile = self._profiles.get(user_key)
        if profile is None:
            profile = UserProfile(user_key=user_key, raw_identifier=identifier, last_used=now)
            self._profiles[user_key] = profile
        profile.last_used = now
        profile.session_count += 1
        self._save()
        return profile

    def touch(self, user_key: str) -> None:
        """Update last use on heartbeat activity."""
        profile = self._profiles.get(user_key)
        if profile:
            profile.last_used = self._clock()

    def get(self, user_key: str) -> Optional[UserProfile]:
        return self._profiles.get(user_key)

    def list_profiles(self) -> list[UserProfile]:
        return list(self._profiles.values())
