"""Two-party peer naming convention.

The pair is fixed: ``user1`` talks to ``user2`` and vice versa. The local id
is supplied externally (page fragment, CLI flag or environment).
"""

PAIR = ("user1", "user2")


def resolve_peer_ids(local_id: str) -> tuple[str, str]:
    """Return ``(local_id, remote_id)`` for the local identity.

    Args:
        local_id: Local identity, with an optional leading ``#``

    Returns:
        Tuple of local and partner peer ids

    Raises:
        ValueError: If local_id is empty
    """
    local_id = local_id.lstrip("#").strip()
    if not local_id:
        raise ValueError("Local peer id must not be empty")

    remote_id = PAIR[1] if local_id == PAIR[0] else PAIR[0]
    return local_id, remote_id


def has_priority(local_id: str, remote_id: str) -> bool:
    """Glare tie-break: the lexicographically smaller id keeps its offer."""
    return local_id < remote_id
