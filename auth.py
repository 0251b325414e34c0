#!/usr/bin/env python3
"""
Credential resolver for the token command.

Owns the persisted session file (~/.ocm.json or $OCM_CONFIG), decides whether
the cached credentials are still usable ("armed") and obtains a live
access/refresh token pair, refreshing it against the OpenID Connect token
endpoint when the access token has expired.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jwt
import requests
import yaml

from errors import (
    ConfigurationError,
    PersistenceError,
    ResolverError,
    SessionUnavailableError,
)

logger = logging.getLogger("ocm_token.auth")

SESSION_ENV_VAR = "OCM_CONFIG"


# -------------------------
# Settings
# -------------------------


class AuthConfig:
    DEFAULTS = {
        "session_file": "~/.ocm.json",
        "token_url": "https://sso.redhat.com/auth/realms/redhat-external/protocol/openid-connect/token",
        "client_id": "cloud-services",
        "request_timeout": 30,
        "access_token_margin": 5,
        "refresh_token_margin": 10,
        "log_file": "logs/ocm_token.log",
        "log_max_bytes": 10 * 1024 * 1024,
        "log_backup_count": 3,
    }

    def __init__(self, settings_path: Optional[str] = "settings.yaml"):
        settings: Dict[str, Any] = {}
        if settings_path:
            path = Path(settings_path)
            if path.exists():
                try:
                    with open(path, "r") as f:
                        settings = yaml.safe_load(f) or {}
                except (OSError, yaml.YAMLError) as e:
                    raise ConfigurationError(f"Can't read settings file {settings_path}: {e}") from e
                if not isinstance(settings, dict):
                    raise ConfigurationError(f"Settings file {settings_path} must contain a mapping")

        self.config: Dict[str, Any] = {**self.DEFAULTS, **settings}

        env_session = os.environ.get(SESSION_ENV_VAR)
        if env_session:
            self.config["session_file"] = env_session
        self.config["session_file"] = str(Path(self.config["session_file"]).expanduser())

    def get(self, k, default=None):
        return self.config.get(k, default)

    def __getitem__(self, k):
        return self.config[k]


# -------------------------
# Session
# -------------------------


class Session:
    """
    Persisted login state.

    Unknown keys are kept in `extra` and written back unchanged on save.
    """

    FIELDS = (
        "access_token",
        "refresh_token",
        "client_id",
        "client_secret",
        "token_url",
        "url",
        "scopes",
        "user",
        "password",
        "insecure",
    )

    def __init__(self, **fields: Any):
        self.access_token: str = fields.pop("access_token", "") or ""
        self.refresh_token: str = fields.pop("refresh_token", "") or ""
        self.client_id: str = fields.pop("client_id", "") or ""
        self.client_secret: str = fields.pop("client_secret", "") or ""
        self.token_url: str = fields.pop("token_url", "") or ""
        self.url: str = fields.pop("url", "") or ""
        scopes = fields.pop("scopes", None) or []
        self.scopes: List[str] = [scopes] if isinstance(scopes, str) else list(scopes)
        self.user: str = fields.pop("user", "") or ""
        self.password: str = fields.pop("password", "") or ""
        self.insecure: bool = bool(fields.pop("insecure", False))
        self.extra: Dict[str, Any] = fields

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for name in self.FIELDS:
            value = getattr(self, name)
            if value or name == "insecure":
                data[name] = value
        return data

    def has_client_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def has_password(self) -> bool:
        return bool(self.user and self.password)


# -------------------------
# Token expiry helpers
# -------------------------


def token_expiry(token: str, now: Optional[float] = None) -> Tuple[bool, float]:
    """
    Read the 'exp' claim of a compact token without verifying it.

    Returns:
        (expires, seconds_left). A missing or zero 'exp' means the token
        never expires, in which case seconds_left is 0.
    """
    if now is None:
        now = time.time()
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        raise ResolverError(f"Can't parse token: {e}") from e

    exp = claims.get("exp")
    if not exp:
        return False, 0.0
    try:
        return True, float(exp) - now
    except (TypeError, ValueError) as e:
        raise ResolverError(f"Can't parse 'exp' claim: {exp!r}") from e


def _token_usable(token: str, margin: float, now: float) -> bool:
    if not token:
        return False
    expires, left = token_expiry(token, now)
    return not expires or left > margin


# -------------------------
# Resolver
# -------------------------


class CredentialResolver:
    """
    Load, check, refresh and save the session used by the token command.
    """

    def __init__(self, config: Optional[AuthConfig] = None):
        self.config = config or AuthConfig(None)
        self.logger = logger
        self.session_file = Path(self.config.get("session_file"))

    def load_session(self) -> Session:
        if not self.session_file.exists():
            self.logger.info("No session file at %s", self.session_file)
            raise SessionUnavailableError("Not logged in, run the 'login' command")

        try:
            data = json.loads(self.session_file.read_text())
        except (OSError, ValueError) as e:
            raise SessionUnavailableError(f"Can't load config file: {e}") from e
        if not isinstance(data, dict):
            raise SessionUnavailableError(f"Can't load config file: {self.session_file} doesn't contain an object")

        self.logger.debug("Loaded session from %s", self.session_file)
        return Session.from_dict(data)

    def is_armed(self, session: Session) -> bool:
        """
        Check that the session has credentials or tokens that haven't expired.
        """
        if session.has_client_credentials() or session.has_password():
            return True

        now = time.time()
        try:
            if _token_usable(session.access_token, float(self.config.get("access_token_margin")), now):
                return True
            if _token_usable(session.refresh_token, float(self.config.get("refresh_token_margin")), now):
                return True
        except ResolverError as e:
            raise ResolverError(f"Can't check if tokens have expired: {e}") from e
        return False

    def resolve_tokens(self, session: Session) -> Tuple[str, str]:
        """
        Return the current (access_token, refresh_token) pair, requesting new
        tokens from the token endpoint if the access token has expired.
        """
        now = time.time()
        try:
            if _token_usable(session.access_token, float(self.config.get("access_token_margin")), now):
                self.logger.debug("Access token still valid, no refresh needed")
                return session.access_token, session.refresh_token

            if _token_usable(session.refresh_token, float(self.config.get("refresh_token_margin")), now):
                self.logger.info("Access token expired, refreshing with refresh token")
                form = {"grant_type": "refresh_token", "refresh_token": session.refresh_token}
            elif session.has_client_credentials():
                self.logger.info("Requesting tokens with client credentials")
                form = {"grant_type": "client_credentials"}
            elif session.has_password():
                self.logger.info("Requesting tokens with user name and password")
                form = {"grant_type": "password", "username": session.user, "password": session.password}
            else:
                raise ResolverError("Can't get token: no usable tokens or credentials")

            return self._request_tokens(session, form)
        except ResolverError:
            raise
        except Exception as e:
            raise ResolverError(f"Can't get token: {e}") from e

    def _request_tokens(self, session: Session, form: Dict[str, str]) -> Tuple[str, str]:
        token_url = session.token_url or self.config.get("token_url")
        form = dict(form)
        form["client_id"] = session.client_id or self.config.get("client_id")
        if session.client_secret:
            form["client_secret"] = session.client_secret
        if session.scopes:
            form["scope"] = " ".join(session.scopes)

        headers = {"Accept": "application/json"}
        try:
            r = requests.post(
                token_url,
                data=form,
                headers=headers,
                timeout=self.config.get("request_timeout"),
                verify=not session.insecure,
            )
        except requests.RequestException as e:
            self.logger.error("Token request to %s failed: %s", token_url, e)
            raise ResolverError(f"Can't get token: {e}") from e

        try:
            data = r.json()
        except ValueError:
            data = {}

        if r.status_code // 100 != 2 or "error" in data:
            detail = data.get("error_description") or data.get("error") or r.text[:200]
            self.logger.error("Token request failed: %s %s", r.status_code, detail)
            raise ResolverError(f"Can't get token: {r.status_code} {detail}")

        access_token = data.get("access_token")
        if not access_token:
            raise ResolverError("Can't get token: response doesn't contain an access token")
        refresh_token = data.get("refresh_token") or session.refresh_token

        self.logger.info("Obtained new access token (prefix): %s...", access_token[:10])
        return access_token, refresh_token

    def save_session(self, session: Session) -> None:
        payload = json.dumps(session.to_dict(), indent=2, sort_keys=True)
        directory = self.session_file.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=self.session_file.name + ".", suffix=".tmp", dir=str(directory))
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                os.chmod(tmp, 0o600)
                os.replace(tmp, str(self.session_file))
            except OSError:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            self.logger.error("Failed to save session: %s", e)
            raise PersistenceError(f"Can't save config file: {e}") from e
        self.logger.info("Saved session to %s", self.session_file)
