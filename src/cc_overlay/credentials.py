from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .config import CONFIG_DIR
from .errors import CredentialError
from .logs import get_logger
from .models import OAuthCredential
from .utils import parse_epoch

logger = get_logger("credentials")

CLAUDE_KEYCHAIN_SERVICE = "Claude Code-credentials"
CODEX_API_KEY_SERVICE = "cc-overlay.codex.api-key"
GEMINI_API_KEY_SERVICE = "cc-overlay.gemini.api-key"
API_KEY_ACCOUNT = "api-key"
CLAUDE_OAUTH_KEY = "claudeAiOauth"

SECURITY_BIN = "/usr/bin/security"
SECURITY_TIMEOUT = 10
SECURITY_ITEM_NOT_FOUND = 44


class CredentialStore(Protocol):
    def read(self, service: str, account: Optional[str] = None) -> Optional[str]:
        ...

    def write(self, service: str, account: str, secret: str) -> None:
        ...

    def delete(self, service: str, account: str) -> None:
        ...


class KeychainStore:
    """macOS keychain through the ``security`` command line tool."""

    def __init__(self, binary: str = SECURITY_BIN):
        self.binary = binary

    def read(self, service: str, account: Optional[str] = None) -> Optional[str]:
        args = [self.binary, "find-generic-password", "-s", service]
        if account:
            args += ["-a", account]
        args.append("-w")
        result = self._run(args)
        if result.returncode == SECURITY_ITEM_NOT_FOUND:
            return None
        if result.returncode != 0:
            raise CredentialError(f"keychain read failed for {service} (exit {result.returncode})")
        return result.stdout.strip() or None

    def write(self, service: str, account: str, secret: str) -> None:
        result = self._run(
            [self.binary, "add-generic-password", "-U", "-s", service, "-a", account, "-w", secret]
        )
        if result.returncode != 0:
            raise CredentialError(f"keychain write failed for {service} (exit {result.returncode})")

    def delete(self, service: str, account: str) -> None:
        result = self._run([self.binary, "delete-generic-password", "-s", service, "-a", account])
        if result.returncode not in (0, SECURITY_ITEM_NOT_FOUND):
            raise CredentialError(f"keychain delete failed for {service} (exit {result.returncode})")

    def _run(self, args) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=SECURITY_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise CredentialError(f"keychain unavailable: {exc}") from exc


class FileCredentialStore:
    """JSON secrets file readable only by the owner."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or CONFIG_DIR / "credentials.json"

    def read(self, service: str, account: Optional[str] = None) -> Optional[str]:
        entries = self._load().get(service) or {}
        if account is None:
            return next(iter(entries.values()), None)
        return entries.get(account)

    def write(self, service: str, account: str, secret: str) -> None:
        data = self._load()
        data.setdefault(service, {})[account] = secret
        self._save(data)

    def delete(self, service: str, account: str) -> None:
        data = self._load()
        if data.get(service, {}).pop(account, None) is not None:
            if not data[service]:
                data.pop(service)
            self._save(data)

    def _load(self) -> Dict[str, Dict[str, str]]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            raise CredentialError(f"cannot read {self.path}: {exc}") from exc
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Dict[str, str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _write_private_json(self.path, data)


def default_store() -> CredentialStore:
    if sys.platform == "darwin" and shutil.which("security"):
        return KeychainStore(shutil.which("security") or SECURITY_BIN)
    return FileCredentialStore()


# ----------------------------------------------------------------------
# Claude Code OAuth blob
# ----------------------------------------------------------------------

class ClaudeCredentials:
    """Reads the Claude Code OAuth blob and writes refreshed tokens back where they came from."""

    def __init__(self, store: Optional[CredentialStore], credentials_file: Path):
        self.store = store
        self.credentials_file = credentials_file
        self.origin: Optional[str] = None

    def load(self) -> Optional[OAuthCredential]:
        blob = self._read_blob()
        if blob is None:
            return None
        return parse_claude_blob(blob)

    def save(self, credential: OAuthCredential) -> None:
        blob = self._read_blob() or {}
        oauth = dict(blob.get(CLAUDE_OAUTH_KEY) or {})
        oauth["accessToken"] = credential.access_token
        if credential.refresh_token:
            oauth["refreshToken"] = credential.refresh_token
        if credential.expires_at:
            oauth["expiresAt"] = int(credential.expires_at.timestamp() * 1000)
        blob[CLAUDE_OAUTH_KEY] = oauth
        if self.origin == "keychain" and self.store is not None:
            self.store.write(CLAUDE_KEYCHAIN_SERVICE, os.getenv("USER", "claude"), json.dumps(blob))
        else:
            self.credentials_file.parent.mkdir(parents=True, exist_ok=True)
            _write_private_json(self.credentials_file, blob)

    def _read_blob(self) -> Optional[Dict[str, Any]]:
        if self.store is not None:
            try:
                raw = self.store.read(CLAUDE_KEYCHAIN_SERVICE)
            except CredentialError as exc:
                logger.debug("claude keychain lookup failed: %s", exc)
                raw = None
            blob = _loads_dict(raw)
            if blob is not None:
                self.origin = "keychain"
                return blob
        try:
            raw = self.credentials_file.read_text(encoding="utf-8")
        except OSError:
            return None
        blob = _loads_dict(raw)
        if blob is not None:
            self.origin = "file"
        return blob


def parse_claude_blob(blob: Dict[str, Any]) -> Optional[OAuthCredential]:
    oauth = blob.get(CLAUDE_OAUTH_KEY)
    if not isinstance(oauth, dict):
        return None
    access_token = oauth.get("accessToken")
    if not isinstance(access_token, str) or not access_token:
        return None
    return OAuthCredential(
        access_token=access_token,
        refresh_token=oauth.get("refreshToken") or None,
        expires_at=parse_epoch(oauth.get("expiresAt")),
        subscription_type=oauth.get("subscriptionType"),
        rate_limit_tier=oauth.get("rateLimitTier"),
    )


# ----------------------------------------------------------------------
# Codex auth.json
# ----------------------------------------------------------------------

class CodexAuthFile:
    def __init__(self, path: Path):
        self.path = path

    def load(self) -> Dict[str, Any]:
        try:
            return _loads_dict(self.path.read_text(encoding="utf-8")) or {}
        except OSError:
            return {}

    def credential(self) -> Optional[OAuthCredential]:
        data = self.load()
        tokens = data.get("tokens")
        if not isinstance(tokens, dict):
            return None
        access_token = tokens.get("access_token")
        refresh_token = tokens.get("refresh_token")
        if not access_token or not refresh_token:
            return None
        return OAuthCredential(
            access_token=access_token,
            refresh_token=refresh_token,
            account_id=tokens.get("account_id"),
            id_token=tokens.get("id_token"),
        )

    def save(self, credential: OAuthCredential) -> None:
        data = self.load()
        tokens = data.get("tokens") if isinstance(data.get("tokens"), dict) else {}
        tokens["access_token"] = credential.access_token
        if credential.refresh_token:
            tokens["refresh_token"] = credential.refresh_token
        if credential.id_token:
            tokens["id_token"] = credential.id_token
        if credential.account_id:
            tokens["account_id"] = credential.account_id
        data["tokens"] = tokens
        data["last_refresh"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        _write_private_json(self.path, data)


def _loads_dict(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _write_private_json(path: Path, data: Dict[str, Any]) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
    os.replace(tmp_path, path)


__all__ = [
    "API_KEY_ACCOUNT",
    "CLAUDE_KEYCHAIN_SERVICE",
    "CODEX_API_KEY_SERVICE",
    "ClaudeCredentials",
    "CodexAuthFile",
    "CredentialStore",
    "FileCredentialStore",
    "GEMINI_API_KEY_SERVICE",
    "KeychainStore",
    "default_store",
    "parse_claude_blob",
]
