"""Settings loader: an INI file with ``MX_*`` environment variables as fallbacks."""

from __future__ import annotations

import configparser
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import ConfigurationError
from .models import ForwardRule

RULE_SECTION_PREFIX = "rule:"
DEDUP_FILENAME = ".forwarded-ids"
LOG_FILENAME = "mail-exchange.log"


@dataclass(frozen=True)
class ImapSettings:
    host: str
    user: str
    password: str
    port: int = 993
    use_ssl: bool = True
    folder: str = "INBOX"
    poll_interval: float = 30.0


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    user: str
    password: str
    port: int = 465
    use_tls: bool = True
    sender: str = ""


@dataclass(frozen=True)
class Settings:
    imap: ImapSettings
    smtp: SmtpSettings
    rules: Tuple[ForwardRule, ...]
    allowed_senders: Tuple[str, ...] = ()
    forward_prefix: Optional[str] = None
    retry_count: int = 3
    retry_base_delay: float = 1.0
    http_host: str = "0.0.0.0"
    http_port: int = 3000
    api_token: Optional[str] = None
    data_dir: str = "."
    log_level: str = "INFO"

    @property
    def dedup_path(self) -> Path:
        return Path(self.data_dir) / DEDUP_FILENAME

    @property
    def log_path(self) -> Path:
        return Path(self.data_dir) / LOG_FILENAME


def split_list(value: Optional[str]) -> Tuple[str, ...]:
    """Split a comma or newline separated option into its non-blank items."""
    if not value:
        return ()
    return tuple(item.strip() for item in re.split(r"[,\n]", value) if item.strip())


def parse_rules(parser: configparser.ConfigParser) -> Tuple[ForwardRule, ...]:
    """Build forwarding rules from ``[rule:<name>]`` sections, in file order."""
    rules = []
    for section in parser.sections():
        if not section.startswith(RULE_SECTION_PREFIX):
            continue
        tag = parser.get(section, "tag", fallback="").strip()
        recipients = split_list(parser.get(section, "recipients", fallback=""))
        if not tag:
            raise ConfigurationError(f"[{section}] is missing 'tag'")
        if not recipients:
            raise ConfigurationError(f"[{section}] is missing 'recipients'")
        rules.append(ForwardRule(tag=tag, recipients=recipients))
    return tuple(rules)


def load_settings(
    config_path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with MX_):
      MX_CONFIG - Path to config.ini file (default: config.ini)
      MX_IMAP_HOST, MX_IMAP_PORT, MX_IMAP_USER, MX_IMAP_PASSWORD, MX_IMAP_USE_SSL,
      MX_IMAP_FOLDER, MX_POLL_INTERVAL - Mailbox polled for inbound mail
      MX_SMTP_HOST, MX_SMTP_PORT, MX_SMTP_USER, MX_SMTP_PASSWORD, MX_SMTP_USE_TLS,
      MX_SMTP_SENDER - Account used for forwarding and notifications
      MX_FORWARD_PREFIX - Optional prefix for forwarded subjects
      MX_ALLOWED_SENDERS - Comma separated allow-list (empty: everyone)
      MX_RETRY_COUNT - Attempts per recipient (default: 3)
      MX_RETRY_BASE_DELAY - Seconds multiplied by the attempt number (default: 1)
      MX_HOST, MX_PORT - Dashboard bind address (default: 0.0.0.0:3000)
      MX_API_TOKEN - Token required on the JSON endpoints
      MX_DATA_DIR - Directory for the dedup record and log file (default: .)
      MX_LOG_LEVEL - Logging level (default: INFO)

    Config file sections/keys:
      [imap] host, port, user, password, use_ssl, folder, poll_interval
      [smtp] host, port, user, password, use_tls, sender
      [forwarding] prefix, allowed_senders, retry_count, retry_base_delay
      [server] host, port, api_token
      [storage] data_dir
      [logging] level
      [rule:<name>] tag, recipients
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("MX_CONFIG", "config.ini"))
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding="utf-8")
    except configparser.Error as exc:
        raise ConfigurationError(f"Invalid config file {path}: {exc}") from exc

    def get(section: str, option: str, env_name: str, default: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(env_name, default)

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigurationError(f"[{section}] {option} must be an integer, got {value!r}") from exc

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigurationError(f"[{section}] {option} must be a number, got {value!r}") from exc

    def get_bool(section: str, option: str, env_name: str, default: bool) -> bool:
        value = get(section, option, env_name)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def require(section: str, option: str, env_name: str) -> str:
        value = (get(section, option, env_name) or "").strip()
        if not value:
            raise ConfigurationError(f"Missing [{section}] {option} (or {env_name})")
        return value

    imap = ImapSettings(
        host=require("imap", "host", "MX_IMAP_HOST"),
        user=require("imap", "user", "MX_IMAP_USER"),
        password=get("imap", "password", "MX_IMAP_PASSWORD", "") or "",
        port=get_int("imap", "port", "MX_IMAP_PORT", 993),
        use_ssl=get_bool("imap", "use_ssl", "MX_IMAP_USE_SSL", True),
        folder=get("imap", "folder", "MX_IMAP_FOLDER", "INBOX") or "INBOX",
        poll_interval=get_float("imap", "poll_interval", "MX_POLL_INTERVAL", 30.0),
    )

    smtp_port = get_int("smtp", "port", "MX_SMTP_PORT", 465)
    smtp_user = require("smtp", "user", "MX_SMTP_USER")
    smtp = SmtpSettings(
        host=require("smtp", "host", "MX_SMTP_HOST"),
        user=smtp_user,
        password=get("smtp", "password", "MX_SMTP_PASSWORD", "") or "",
        port=smtp_port,
        use_tls=get_bool("smtp", "use_tls", "MX_SMTP_USE_TLS", smtp_port == 465),
        sender=(get("smtp", "sender", "MX_SMTP_SENDER") or "").strip() or smtp_user,
    )

    rules = parse_rules(parser)
    if not rules:
        raise ConfigurationError("No forwarding rules configured (add [rule:<name>] sections)")

    retry_count = get_int("forwarding", "retry_count", "MX_RETRY_COUNT", 3)
    if retry_count < 1:
        raise ConfigurationError(f"[forwarding] retry_count must be at least 1, got {retry_count}")

    token = get("server", "api_token", "MX_API_TOKEN")
    token = token.strip() or None if isinstance(token, str) else None
    prefix = get("forwarding", "prefix", "MX_FORWARD_PREFIX")
    prefix = prefix.strip() or None if isinstance(prefix, str) else None
    data_dir = get("storage", "data_dir", "MX_DATA_DIR", ".") or "."

    return Settings(
        imap=imap,
        smtp=smtp,
        rules=rules,
        allowed_senders=split_list(get("forwarding", "allowed_senders", "MX_ALLOWED_SENDERS")),
        forward_prefix=prefix,
        retry_count=retry_count,
        retry_base_delay=get_float("forwarding", "retry_base_delay", "MX_RETRY_BASE_DELAY", 1.0),
        http_host=get("server", "host", "MX_HOST", "0.0.0.0") or "0.0.0.0",
        http_port=get_int("server", "port", "MX_PORT", 3000),
        api_token=token,
        data_dir=os.path.expanduser(data_dir),
        log_level=(get("logging", "level", "MX_LOG_LEVEL", "INFO") or "INFO").upper(),
    )
