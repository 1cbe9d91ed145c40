"""
Participant API keys.

A participant is identified by its wallet address. Registering an address
mints an API key; only the sha256 hash of the key is stored and the raw
key is returned once. Proving wallet ownership is the wallet layer's job
and happens before registration.
"""

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Participant:
    participant_id: str
    api_key_hash: str
    created_at: str = field(default_factory=_now)
    last_seen_at: str = field(default_factory=_now)


def _hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


class AuthStore:
    """In-memory key store. Serialized via the persistence module."""

    def __init__(self):
        self.participants: dict[str, Participant] = {}
        self.key_to_participant: dict[str, Participant] = {}

    def register(self, participant_id: str) -> tuple[Participant, str]:
        """Register a wallet address. Returns (participant, raw_api_key)."""
        if participant_id in self.participants:
            raise ValueError("participant_taken")
        raw_key = secrets.token_urlsafe(32)
        key_hash = _hash_key(raw_key)
        participant = Participant(
            participant_id=participant_id,
            api_key_hash=key_hash,
        )
        self.participants[participant_id] = participant
        self.key_to_participant[key_hash] = participant
        return participant, raw_key

    def authenticate(self, raw_key: str) -> Participant | None:
        """Validate an API key. Returns the Participant or None."""
        participant = self.key_to_participant.get(_hash_key(raw_key))
        if participant:
            participant.last_seen_at = _now()
        return participant
