"""
Nostr event primitives.

Events travel through the engine as plain NIP-01 dicts
(``id``, ``pubkey``, ``created_at``, ``kind``, ``tags``, ``content``, ``sig``).
This module computes ids, signs and verifies them with BIP-340 Schnorr
signatures over secp256k1, derives x-only public keys and reads tags.
"""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Optional

import secp256k1

Tag = list[str]


# =============================================================================
# Keys
# =============================================================================


def derive_public_key(private_key_hex: str) -> str:
    """Return the x-only public key (hex) for a hex private key."""
    private_key = secp256k1.PrivateKey(bytes.fromhex(private_key_hex))
    return private_key.pubkey.serialize(compressed=True)[1:].hex()


# =============================================================================
# Event id and signature
# =============================================================================


def calc_event_id(pubkey: str, created_at: int, kind: int, tags: list[Tag], content: str) -> str:
    """
    Calculate the NIP-01 event id.

    The id is the sha256 of the compact JSON array
    ``[0, pubkey, created_at, kind, tags, content]``.

    Raises:
        TypeError: if any field has the wrong type
    """
    if not isinstance(pubkey, str):
        raise TypeError(f"pubkey must be a str, not {type(pubkey)}")
    if not isinstance(created_at, int):
        raise TypeError(f"created_at must be an int, not {type(created_at)}")
    if not isinstance(kind, int):
        raise TypeError(f"kind must be an int, not {type(kind)}")
    if not isinstance(tags, list) or not all(isinstance(tag, list) for tag in tags):
        raise TypeError("tags must be a list of lists of str")
    for tag in tags:
        for item in tag:
            if not isinstance(item, str):
                raise TypeError(f"tag must contain str, not {type(item)}")
    if not isinstance(content, str):
        raise TypeError(f"content must be a str, not {type(content)}")

    data = [0, pubkey, created_at, kind, tags, content]
    data_str = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data_str.encode("utf-8")).hexdigest()


def sign_event_id(event_id: str, private_key_hex: str) -> str:
    """Schnorr-sign an event id, returning the 64-byte signature as hex."""
    private_key = secp256k1.PrivateKey(bytes.fromhex(private_key_hex))
    sig = private_key.schnorr_sign(bytes.fromhex(event_id), bip340tag=None, raw=True)
    return sig.hex()


def verify_event(event: dict[str, Any]) -> bool:
    """Check that an event's id matches its fields and its signature is valid."""
    try:
        expected_id = calc_event_id(
            event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]
        )
        if expected_id != event["id"]:
            return False
        pub_key = secp256k1.PublicKey(bytes.fromhex("02" + event["pubkey"]), True)
        return bool(
            pub_key.schnorr_verify(
                bytes.fromhex(event["id"]), bytes.fromhex(event["sig"]), None, raw=True
            )
        )
    except (KeyError, ValueError, TypeError):
        return False


def build_event(
    private_key_hex: str,
    kind: int,
    tags: list[Tag],
    content: str,
    created_at: Optional[int] = None,
) -> dict[str, Any]:
    """
    Build and sign an event authored by the key's owner.

    Args:
        private_key_hex: Author private key
        kind: Event kind
        tags: Event tags
        content: Event content
        created_at: Unix timestamp (default: now)

    Returns:
        Signed event dict
    """
    if created_at is None:
        created_at = int(time.time())

    pubkey = derive_public_key(private_key_hex)
    event_id = calc_event_id(pubkey, created_at, kind, tags, content)
    return {
        "id": event_id,
        "pubkey": pubkey,
        "created_at": created_at,
        "kind": kind,
        "tags": tags,
        "content": content,
        "sig": sign_event_id(event_id, private_key_hex),
    }


# =============================================================================
# Tags
# =============================================================================


def find_tag(event: dict[str, Any], name: str) -> Optional[Tag]:
    """Return the first tag named ``name``, or None."""
    for tag in event.get("tags", []):
        if tag and tag[0] == name:
            return tag
    return None


def tag_value(event: dict[str, Any], name: str, index: int = 1) -> Optional[str]:
    """Return item ``index`` of the first tag named ``name``, or None."""
    tag = find_tag(event, name)
    if tag is None or len(tag) <= index:
        return None
    return tag[index]


def has_tag(event: dict[str, Any], name: str) -> bool:
    return find_tag(event, name) is not None
