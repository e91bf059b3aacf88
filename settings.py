import logging
import os
import re
import socket
from enum import Enum
from typing import List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8081
DEFAULT_ROUTER_PORT = 10000
DEFAULT_POOL = ("http://localhost:8081",)

# strconv.Atoi style: optional sign, ASCII digits, nothing else
_INT_RE = re.compile(r"[+-]?[0-9]+")


class IndexMode(str, Enum):
    HASH = "hash"
    NUMERIC = "numeric"


def parse_int(value: Optional[str]) -> Optional[int]:
    """Strict integer parse. Returns None instead of raising."""
    if value is None or not _INT_RE.fullmatch(value):
        return None
    return int(value)


def split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


class AddressTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    prefix: str
    suffix: str = ""
    port: int = DEFAULT_PORT


class ReplicaSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    replicas: int = 1
    index_base: int = 1
    index_mode: IndexMode = IndexMode.HASH


class ServerSettings(BaseModel):
    """Everything the directory service needs, read once at startup."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    port: int = DEFAULT_PORT
    replica_set: ReplicaSet = ReplicaSet()
    template: Optional[AddressTemplate] = None
    peers: Tuple[str, ...] = ()

    @property
    def self_hostport(self) -> str:
        return f"{self.hostname}:{self.port}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, hostname: Optional[str] = None):
        env = os.environ if environ is None else environ

        raw_port = (env.get("PORT") or "").strip()
        port = parse_int(raw_port) if raw_port else DEFAULT_PORT
        if port is None:
            logger.warning(f"Invalid PORT {env.get('PORT')!r}, using {DEFAULT_PORT}")
            port = DEFAULT_PORT

        replicas = parse_int(env.get("REPLICAS"))
        if replicas is None or replicas <= 0:
            replicas = 1

        mode = (env.get("INDEX_MODE") or "").strip().lower()
        index_mode = IndexMode.NUMERIC if mode == IndexMode.NUMERIC.value else IndexMode.HASH

        base = parse_int((env.get("INDEX_BASE") or "").strip())
        if base is None:
            base = 1

        template = None
        prefix = env.get("SERVICE_PREFIX")
        if prefix:
            template = AddressTemplate(prefix=prefix, suffix=env.get("SERVICE_SUFFIX", ""), port=port)

        return cls(
            hostname=hostname or socket.gethostname(),
            port=port,
            replica_set=ReplicaSet(replicas=replicas, index_base=base, index_mode=index_mode),
            template=template,
            peers=tuple(split_list(env.get("SERVER_PEERS"))),
        )


class RouterSettings(BaseModel):
    """Gateway configuration: where the pool lives and how long to wait on it."""

    model_config = ConfigDict(frozen=True)

    pool: Tuple[str, ...] = DEFAULT_POOL
    port: int = DEFAULT_ROUTER_PORT
    join_prefix: str = "/join"
    resolver_timeout: float = 1.0
    upstream_timeout: float = 30.0
    dns_ttl: float = 5.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides):
        env = os.environ if environ is None else environ
        values = {}
        pool = split_list(env.get("POOL_URLS"))
        if pool:
            values["pool"] = tuple(pool)
        port = parse_int((env.get("ROUTER_PORT") or "").strip())
        if port is not None:
            values["port"] = port
        if env.get("JOIN_PREFIX"):
            values["join_prefix"] = env["JOIN_PREFIX"]
        for key, field in (
            ("RESOLVER_TIMEOUT", "resolver_timeout"),
            ("UPSTREAM_TIMEOUT", "upstream_timeout"),
            ("DNS_TTL", "dns_ttl"),
        ):
            if env.get(key):
                try:
                    values[field] = float(env[key])
                except ValueError:
                    logger.warning(f"Ignoring invalid {key}={env[key]!r}")
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
