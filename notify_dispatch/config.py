"""Shared configuration defaults for the dispatch subsystem."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

DEFAULT_NOTIFIERS = ("email",)
DEFAULT_FLAG_PREFIX = "subscribe_"
DEFAULT_OPT_IN_PREFIX = "email_"
DEFAULT_QUEUE_RANGE = 100
DEFAULT_QUEUE_TIME_LIMIT = 60
DEFAULT_DATABASE_URL = "sqlite:///notify_dispatch.db"

FALSE_VALUES = {"0", "false", "no", "off"}


def _env_flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in FALSE_VALUES


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def parse_channels(value) -> Tuple[str, ...]:
    if isinstance(value, str):
        channels = [c.strip() for c in value.split(",") if c.strip()]
    else:
        channels = [str(c).strip() for c in (value or []) if str(c).strip()]
    # dict.fromkeys keeps first-seen order while dropping repeats
    return tuple(dict.fromkeys(channels))


@dataclass(frozen=True)
class DispatchSettings:
    """Process-wide defaults injected into the resolver and engine."""

    use_queue: bool = False
    notify_message_owner: bool = False
    default_notifiers: Tuple[str, ...] = DEFAULT_NOTIFIERS
    flag_prefix: str = DEFAULT_FLAG_PREFIX
    opt_in_prefix: str = DEFAULT_OPT_IN_PREFIX
    queue_range: int = DEFAULT_QUEUE_RANGE
    queue_time_limit: int = DEFAULT_QUEUE_TIME_LIMIT
    database_url: str = DEFAULT_DATABASE_URL


def load_settings(environ: Optional[Mapping[str, str]] = None) -> DispatchSettings:
    env = os.environ if environ is None else environ
    notifiers = parse_channels(env.get("NOTIFY_DEFAULT_NOTIFIERS", ",".join(DEFAULT_NOTIFIERS)))
    return DispatchSettings(
        use_queue=_env_flag(env, "NOTIFY_USE_QUEUE", False),
        notify_message_owner=_env_flag(env, "NOTIFY_OWN_ACTIONS", False),
        default_notifiers=notifiers,
        flag_prefix=env.get("NOTIFY_FLAG_PREFIX") or DEFAULT_FLAG_PREFIX,
        opt_in_prefix=env.get("NOTIFY_OPT_IN_PREFIX") or DEFAULT_OPT_IN_PREFIX,
        queue_range=max(1, _env_int(env, "NOTIFY_QUEUE_RANGE", DEFAULT_QUEUE_RANGE)),
        queue_time_limit=max(1, _env_int(env, "NOTIFY_QUEUE_TIME_LIMIT", DEFAULT_QUEUE_TIME_LIMIT)),
        database_url=env.get("DATABASE_URL") or env.get("SQLALCHEMY_DATABASE_URI") or DEFAULT_DATABASE_URL,
    )
