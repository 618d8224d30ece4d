"""
Authentication module for the browser session manager.

Supports:
  - A shared bearer token from the AUTH_TOKEN environment variable
  - Named API tokens stored as bcrypt hashes in auth.yaml (see edit_token.py)
  - Rate limiting of failed token attempts per client IP

When neither AUTH_TOKEN nor auth.yaml is configured, authentication is
disabled entirely and the server refuses to bind anything but localhost.
"""

import hashlib
import logging
import os
import secrets
from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import bcrypt
import yaml

logger = logging.getLogger(__name__)

# Path to the auth config file (project root)
AUTH_CONFIG_PATH = Path(__file__).parent.parent / "auth.yaml"
AUTH_TOKEN_ENV = "AUTH_TOKEN"

# Rate limiting configuration
RATE_LIMIT_MAX_ATTEMPTS = 50  # Max failed attempts before lockout
RATE_LIMIT_WINDOW_MINUTES = 15  # Lockout window in minutes


class RateLimiter:
    """
    Rate limiter for brute force protection.

    Tracks failed token attempts per client IP address.
    Blocks further attempts after max_attempts within window_minutes.
    """

    def __init__(self, max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
                 window_minutes: int = RATE_LIMIT_WINDOW_MINUTES):
        self._max_attempts = max_attempts
        self._window = timedelta(minutes=window_minutes)
        # IP -> list of attempt timestamps
        self._attempts: dict[str, list[datetime]] = defaultdict(list)

    def _cleanup_old_attempts(self, ip_address: str) -> None:
        """Remove attempts older than the rate limit window."""
        cutoff = datetime.now() - self._window
        recent = [t for t in self._attempts.get(ip_address, []) if t > cutoff]
        if recent:
            self._attempts[ip_address] = recent
        else:
            self._attempts.pop(ip_address, None)

    def is_blocked(self, ip_address: str) -> bool:
        self._cleanup_old_attempts(ip_address)
        return len(self._attempts.get(ip_address, [])) >= self._max_attempts

    def record_failure(self, ip_address: str) -> None:
        self._cleanup_old_attempts(ip_address)
        self._attempts[ip_address].append(datetime.now())

    def clear_on_success(self, ip_address: str) -> None:
        self._attempts.pop(ip_address, None)

    def get_remaining_attempts(self, ip_address: str) -> int:
        self._cleanup_old_attempts(ip_address)
        return max(0, self._max_attempts - len(self._attempts.get(ip_address, [])))


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the global rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


class TokenAuthManager:
    """
    Validates bearer tokens sent by API callers.

    bcrypt is deliberately slow, so a token that verified once is remembered
    by its SHA-256 digest and later requests skip the bcrypt check. Reloading
    the config clears that cache.
    """

    def __init__(self, config_path: Path = AUTH_CONFIG_PATH, env_token: Optional[str] = None):
        self._config_path = config_path
        self._env_token = env_token if env_token is not None else os.environ.get(AUTH_TOKEN_ENV, "")
        self._config = self._load_config()
        self._verified: dict[str, str] = {}  # sha256(token) -> token name
        logger.info("Authentication enabled - %d API token(s) configured%s",
                    len(self._tokens()), " plus AUTH_TOKEN" if self._env_token else "")

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def _load_config(self) -> dict:
        """Load and validate auth.yaml (absent file means no stored tokens)."""
        if not self._config_path.is_file():
            return {}
        with open(self._config_path) as f:
            config = yaml.safe_load(f) or {}
        if not isinstance(config, dict):
            raise ValueError(f"auth.yaml must be a YAML mapping, got {type(config)}")
        return config

    def _tokens(self) -> dict:
        return self._config.get("tokens") or {}

    def reload_config(self) -> None:
        """Hot-reload auth.yaml (e.g. after edit_token.py changes)."""
        try:
            self._config = self._load_config()
            self._verified.clear()
            logger.info("Auth config reloaded")
        except Exception as e:
            logger.error("Failed to reload auth config: %s", e)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: Optional[str]) -> Optional[str]:
        """Return the name of the matching token, or None."""
        if not token:
            return None

        if self._env_token and secrets.compare_digest(
            token.encode("utf-8"), self._env_token.encode("utf-8")
        ):
            return AUTH_TOKEN_ENV

        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
        if digest in self._verified:
            return self._verified[digest]

        for name, entry in self._tokens().items():
            stored_hash = (entry or {}).get("token_hash", "")
            try:
                if bcrypt.checkpw(token.encode("utf-8"), stored_hash.encode("utf-8")):
                    self._verified[digest] = name
                    return name
            except (ValueError, TypeError):
                logger.warning("Invalid token hash for '%s'", name)
        return None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def is_auth_enabled() -> bool:
    """Check if AUTH_TOKEN is set or auth.yaml exists."""
    return bool(os.environ.get(AUTH_TOKEN_ENV)) or AUTH_CONFIG_PATH.is_file()


def create_auth_manager() -> Optional[TokenAuthManager]:
    """
    Create a TokenAuthManager if authentication is configured.

    Returns None if auth is not configured (localhost-only mode).
    """
    if not is_auth_enabled():
        return None
    try:
        return TokenAuthManager()
    except Exception as e:
        logger.error("Failed to initialize authentication: %s", e)
        raise
