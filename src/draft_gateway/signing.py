"""HMAC signing of confirmed drafts and legacy proposals."""

from __future__ import annotations

import hashlib
import hmac
from typing import Any

from draft_gateway.utils.hashing import canonical_hash


class Signer:
    """Issues and verifies tamper-evident confirmation hashes.

    A draft signature covers ``draft_id:workspace_id:actor_id:expires_at:H``
    where ``H`` is the canonical hash of the signed content. Changing any of
    those inputs yields a different hex digest.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Signing secret must not be empty")
        self._key = secret.encode("utf-8")

    def _digest(self, message: str) -> str:
        return hmac.new(self._key, message.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(
        self,
        draft_id: str,
        workspace_id: str,
        actor_id: str,
        expires_at: int,
        payload: Any,
    ) -> str:
        message = f"{draft_id}:{workspace_id}:{actor_id}:{expires_at}:{canonical_hash(payload)}"
        return self._digest(message)

    def verify(
        self,
        signature: str,
        draft_id: str,
        workspace_id: str,
        actor_id: str,
        expires_at: int,
        payload: Any,
    ) -> bool:
        expected = self.sign(draft_id, workspace_id, actor_id, expires_at, payload)
        return constant_time_equals(expected, signature)

    def sign_legacy(
        self,
        proposal_id: str,
        workspace_id: str,
        actor_id: str,
        expires_at: int,
    ) -> str:
        return self._digest(f"{proposal_id}:{workspace_id}:{actor_id}:{expires_at}")

    def verify_legacy(
        self,
        signature: str,
        proposal_id: str,
        workspace_id: str,
        actor_id: str,
        expires_at: int,
    ) -> bool:
        expected = self.sign_legacy(proposal_id, workspace_id, actor_id, expires_at)
        return constant_time_equals(expected, signature)


def constant_time_equals(expected: str, provided: str) -> bool:
    """Compare two digests without leaking the position of the first mismatch."""
    if not isinstance(provided, str) or len(expected) != len(provided):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
