from __future__ import annotations

import json
import os
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from .config import MonitorConfig
from .credentials import (
    API_KEY_ACCOUNT,
    CODEX_API_KEY_SERVICE,
    GEMINI_API_KEY_SERVICE,
    ClaudeCredentials,
    CodexAuthFile,
    CredentialStore,
)
from .errors import CredentialError
from .logs import get_logger
from .models import AuthMode, GeminiTier, Provider, ProviderDetection
from .paths import DEFAULT_CODE_DIR, codex_home, discover_claude_paths, gemini_home
from .utils import decode_jwt_claims

logger = get_logger("detect")

OPENAI_AUTH_CLAIM = "https://api.openai.com/auth"
CODEX_OAUTH_MODES = ("chatgpt", "oauth")


def find_binary(name: str, candidates: List[Path]) -> Optional[str]:
    """First existing executable candidate, then the shell search path."""
    seen = set()
    for path in candidates:
        path = path.expanduser()
        key = str(path)
        if key in seen:
            continue
        seen.add(key)
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
    return shutil.which(name)


def parse_flat_toml(text: str) -> Dict[str, str]:
    """Top-level ``key = "value"`` pairs; comments and everything under a section header are ignored."""
    values: Dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("["):
            break
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def parse_env_file(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].strip()
        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        values[key.strip()] = value
    return values


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _read_json(path: Path) -> Dict:
    raw = _read_text(path)
    if raw is None:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _manual_key(store: Optional[CredentialStore], service: str) -> Optional[str]:
    if store is None:
        return None
    try:
        return store.read(service, API_KEY_ACCOUNT)
    except CredentialError as exc:
        logger.debug("manual key lookup failed for %s: %s", service, exc)
        return None


# ----------------------------------------------------------------------
# Claude Code
# ----------------------------------------------------------------------

class ClaudeDetector:
    provider = Provider.CLAUDE

    def __init__(self, config: MonitorConfig, store: Optional[CredentialStore] = None):
        self.config = config
        self.store = store

    def binary_candidates(self) -> List[Path]:
        home = Path.home()
        return [
            home / ".claude" / "local" / "claude",
            home / ".local" / "bin" / "claude",
            Path("/opt/homebrew/bin/claude"),
            Path("/usr/local/bin/claude"),
            home / ".npm-global" / "bin" / "claude",
        ]

    def credentials(self) -> ClaudeCredentials:
        roots = discover_claude_paths(self.config.claude_paths) or [DEFAULT_CODE_DIR]
        return ClaudeCredentials(self.store, roots[0] / ".credentials.json")

    def detect(self) -> ProviderDetection:
        roots = discover_claude_paths(self.config.claude_paths)
        detection = ProviderDetection(
            provider=self.provider,
            binary_path=find_binary("claude", self.binary_candidates()),
            config_path=str(roots[0]) if roots else None,
        )
        source = self.credentials()
        credential = source.load()
        if credential is not None:
            detection.auth_mode = AuthMode.OAUTH
            detection.credential = credential
            detection.credential_source = source.origin
            detection.plan = credential.subscription_type
            return detection
        api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
        if api_key:
            detection.auth_mode = AuthMode.API_KEY
            detection.api_key = api_key
            detection.credential_source = "env"
        return detection


# ----------------------------------------------------------------------
# Codex
# ----------------------------------------------------------------------

class CodexDetector:
    provider = Provider.CODEX

    def __init__(self, config: MonitorConfig, store: Optional[CredentialStore] = None):
        self.config = config
        self.store = store
        self.home = codex_home(config.codex_home)

    def binary_candidates(self) -> List[Path]:
        home = Path.home()
        return [
            Path("/opt/homebrew/bin/codex"),
            Path("/usr/local/bin/codex"),
            home / ".local" / "bin" / "codex",
            home / ".npm" / "bin" / "codex",
        ]

    def auth_file(self) -> CodexAuthFile:
        return CodexAuthFile(self.home / "auth.json")

    def detect(self) -> ProviderDetection:
        config_file = self.home / "config.toml"
        config_values = parse_flat_toml(_read_text(config_file) or "")
        detection = ProviderDetection(
            provider=self.provider,
            binary_path=find_binary("codex", self.binary_candidates()),
            config_path=str(config_file) if config_file.exists() else None,
            model=config_values.get("model") or None,
        )

        auth_file = self.auth_file()
        auth_data = auth_file.load()
        credential = auth_file.credential()
        auth_mode = str(auth_data.get("auth_mode") or "").lower()
        if credential is not None and (auth_mode in CODEX_OAUTH_MODES or not auth_mode):
            detection.auth_mode = AuthMode.OAUTH
            detection.credential = credential
            detection.credential_source = str(auth_file.path)
            detection.plan = codex_plan_type(credential.id_token, credential.access_token)
            return detection

        env_key = os.getenv("OPENAI_API_KEY", "").strip()
        config_key = config_values.get("api_key", "").strip()
        for key, source in (
            (env_key, "env"),
            (config_key, "config"),
            (_manual_key(self.store, CODEX_API_KEY_SERVICE), "manual"),
        ):
            if key and (source == "manual" or key.startswith("sk-")):
                detection.auth_mode = AuthMode.API_KEY
                detection.api_key = key
                detection.credential_source = source
                break
        return detection


def codex_plan_type(id_token: Optional[str], access_token: Optional[str]) -> Optional[str]:
    for token in (id_token, access_token):
        claim = decode_jwt_claims(token).get(OPENAI_AUTH_CLAIM)
        if isinstance(claim, dict) and claim.get("chatgpt_plan_type"):
            return str(claim["chatgpt_plan_type"])
    return None


# ----------------------------------------------------------------------
# Gemini
# ----------------------------------------------------------------------

_VERSION_PATTERN = re.compile(r"\d+")


def _semver_key(path: Path):
    return tuple(int(part) for part in _VERSION_PATTERN.findall(path.name))


class GeminiDetector:
    provider = Provider.GEMINI

    def __init__(self, config: MonitorConfig, store: Optional[CredentialStore] = None):
        self.config = config
        self.store = store
        self.home = gemini_home(config.gemini_home)

    def binary_candidates(self) -> List[Path]:
        home = Path.home()
        candidates = [
            Path("/opt/homebrew/bin/gemini"),
            Path("/usr/local/bin/gemini"),
            home / ".npm-global" / "bin" / "gemini",
            home / ".local" / "bin" / "gemini",
        ]
        nvm_root = home / ".nvm" / "versions" / "node"
        try:
            versions = sorted(
                (p for p in nvm_root.iterdir() if p.is_dir()), key=_semver_key, reverse=True
            )
        except OSError:
            versions = []
        candidates.extend(version / "bin" / "gemini" for version in versions)
        return candidates

    def detect(self) -> ProviderDetection:
        settings_file = self.home / "settings.json"
        settings = _read_json(settings_file)
        detection = ProviderDetection(
            provider=self.provider,
            binary_path=find_binary("gemini", self.binary_candidates()),
            config_path=str(settings_file if settings_file.exists() else self.home)
            if self.home.exists()
            else None,
            model=settings.get("model") if isinstance(settings.get("model"), str) else None,
        )

        accounts = _read_json(self.home / "google_accounts.json")
        email = accounts.get("active") if isinstance(accounts.get("active"), str) else None
        if email or (self.home / "oauth_creds.json").exists():
            detection.auth_mode = AuthMode.OAUTH
            detection.account_email = email
            detection.credential_source = "oauth_creds"
            detection.plan = gemini_tier(AuthMode.OAUTH, email).value
            return detection

        auth_settings = settings.get("auth") if isinstance(settings.get("auth"), dict) else {}
        env_file_key = parse_env_file(_read_text(self.home / ".env") or "").get("GEMINI_API_KEY")
        for key, source in (
            (os.getenv("GEMINI_API_KEY", "").strip(), "env"),
            (env_file_key, "env_file"),
            (settings.get("api_key") or auth_settings.get("api_key"), "settings"),
            (_manual_key(self.store, GEMINI_API_KEY_SERVICE), "manual"),
        ):
            if isinstance(key, str) and key.strip():
                detection.auth_mode = AuthMode.API_KEY
                detection.api_key = key.strip()
                detection.credential_source = source
                detection.plan = gemini_tier(AuthMode.API_KEY, None).value
                break
        return detection


def gemini_tier(auth_mode: AuthMode, email: Optional[str]) -> GeminiTier:
    if auth_mode is AuthMode.API_KEY:
        return GeminiTier.API_FREE
    if email and email.lower().endswith(("@gmail.com", "@googlemail.com")):
        return GeminiTier.CODE_ASSIST_FREE
    return GeminiTier.CODE_ASSIST_UNKNOWN


__all__ = [
    "ClaudeDetector",
    "CodexDetector",
    "GeminiDetector",
    "codex_plan_type",
    "find_binary",
    "gemini_tier",
    "parse_env_file",
    "parse_flat_toml",
]
