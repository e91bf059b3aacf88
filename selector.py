"""Deterministic replica selection.

Maps an opaque client id to exactly one replica address. Everything here is a
pure function of its arguments, so every replica computes the same answer for
the same configuration.
"""
from typing import Optional, Sequence

from settings import AddressTemplate, IndexMode, ServerSettings, parse_int

FNV32_OFFSET = 2166136261
FNV32_PRIME = 16777619


def fnv1a_32(data: bytes) -> int:
    h = FNV32_OFFSET
    for byte in data:
        h ^= byte
        h = (h * FNV32_PRIME) & 0xFFFFFFFF
    return h


def hash_remainder(client_id: str, n: int) -> int:
    return fnv1a_32(client_id.encode("utf-8")) % n


def compute_index(client_id: str, replicas: int, mode: IndexMode = IndexMode.HASH, base: int = 1) -> int:
    """Return the replica index for client_id, in [base, base + replicas - 1].

    NUMERIC mode uses abs(int(client_id)) % replicas and quietly falls back to
    hashing when client_id is not an integer.
    """
    if replicas <= 0:
        replicas = 1

    remainder = None
    if mode == IndexMode.NUMERIC:
        n = parse_int(client_id)
        if n is not None:
            remainder = abs(n) % replicas
    if remainder is None:
        remainder = hash_remainder(client_id, replicas)
    return remainder + base


def format_address(index: int, template: AddressTemplate) -> str:
    return f"{template.prefix}-{index}{template.suffix}:{template.port}"


def pick_peer(client_id: str, peers: Sequence[str]) -> Optional[str]:
    # blank entries never count towards the modulus
    filtered = [p.strip() for p in peers if p.strip()]
    if not filtered:
        return None
    return filtered[hash_remainder(client_id, len(filtered))]


def resolve_target(client_id: str, settings: ServerSettings) -> str:
    """Pick the host:port that should serve client_id.

    Templated addressing wins when a prefix is configured, even if a legacy
    peer list is set too. Without a prefix the peer list is used, and without
    peers the answer is this process itself.
    """
    if settings.template is not None:
        rs = settings.replica_set
        idx = compute_index(client_id, rs.replicas, rs.index_mode, rs.index_base)
        return format_address(idx, settings.template)

    peer = pick_peer(client_id, settings.peers)
    if peer is not None:
        return peer
    return settings.self_hostport
