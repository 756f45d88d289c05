"""
Request Defense Gateway — CSRF Guard.

Issues short-lived anti-forgery tokens bound to an authenticated user
and validates them on state-changing requests. The subject is always the
server-verified user id; nothing in the token or the request headers can
choose it.
"""

from __future__ import annotations

import hmac
import json
import logging
import secrets
from dataclasses import asdict, dataclass

from defense_gateway.storage.kv import Clock, KeyValueStore, StoreUnavailableError, epoch_ms

logger = logging.getLogger("gateway.mitigation.csrf")

TOKEN_BYTES = 32  # 256 bits of entropy
DEFAULT_TTL_MS = 60 * 60 * 1000


@dataclass(frozen=True)
class CSRFToken:
    value: str
    subject_user_id: str
    issued_at_ms: int
    expires_at_ms: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at_ms

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CSRFToken":
        return cls(**json.loads(raw))


class CSRFGuard:
    """
    Token store keyed by token value, plus a per-subject index used for
    invalidation and for capping the number of live tokens.

    Fails closed: if the store cannot be read, validation returns False.
    """

    TOKEN_PREFIX = "csrf:token:"
    SUBJECT_PREFIX = "csrf:subject:"
    MAX_CAS_ATTEMPTS = 8

    def __init__(
        self,
        store: KeyValueStore,
        ttl_ms: int = DEFAULT_TTL_MS,
        max_tokens_per_subject: int = 5,
        clock: Clock = epoch_ms,
    ) -> None:
        self._store = store
        self._ttl_ms = ttl_ms
        self._max_tokens = max_tokens_per_subject
        self._clock = clock

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    async def issue(self, subject_user_id: str) -> CSRFToken:
        """
        Mint a new token for an already-authenticated subject.

        Raises ``StoreUnavailableError`` when the token cannot be stored and
        indexed; nothing is left behind in that case.
        """
        if not subject_user_id:
            raise ValueError("CSRF tokens require an authenticated subject")

        now = self._clock()
        token = CSRFToken(
            value=secrets.token_urlsafe(TOKEN_BYTES),
            subject_user_id=subject_user_id,
            issued_at_ms=now,
            expires_at_ms=now + self._ttl_ms,
        )
        token_key = self.TOKEN_PREFIX + token.value
        await self._store.set(token_key, token.to_json(), ttl_ms=self._ttl_ms)
        try:
            evicted = await self._index_add(token)
        except StoreUnavailableError:
            # An unindexed token would outlive the per-subject cap and logout.
            await self._store.delete(token_key)
            raise
        if evicted:
            await self._store.delete(*(self.TOKEN_PREFIX + v for v in evicted))
            logger.debug("Evicted %d CSRF token(s) for %s", len(evicted), subject_user_id)
        return token

    async def validate(self, presented_token: str, subject_user_id: str) -> bool:
        """True iff the token exists, is live, and belongs to the subject."""
        if not presented_token or not subject_user_id:
            return False
        try:
            raw = await self._store.get(self.TOKEN_PREFIX + presented_token)
            if raw is None:
                return False
            token = CSRFToken.from_json(raw)
        except Exception:
            logger.warning("CSRF token lookup failed, rejecting", exc_info=True)
            return False

        if token.is_expired(self._clock()):
            return False
        return hmac.compare_digest(
            token.subject_user_id.encode(), subject_user_id.encode(),
        )

    async def invalidate(self, subject_user_id: str) -> None:
        """Drop every token issued to the subject (e.g. on logout)."""
        index_key = self.SUBJECT_PREFIX + subject_user_id
        for _ in range(self.MAX_CAS_ATTEMPTS):
            raw = await self._store.get(index_key)
            if raw is None:
                return
            if await self._store.compare_and_swap(index_key, raw, None):
                values = [value for value, _ in json.loads(raw)]
                if values:
                    await self._store.delete(*(self.TOKEN_PREFIX + v for v in values))
                logger.info("Invalidated %d CSRF token(s) for %s", len(values), subject_user_id)
                return
        # Lost every race; remove the index outright so nothing survives logout.
        raw = await self._store.get(index_key)
        await self._store.delete(index_key)
        if raw:
            await self._store.delete(*(self.TOKEN_PREFIX + v for v, _ in json.loads(raw)))

    # ── Internal ─────────────────────────────────────────

    async def _index_add(self, token: CSRFToken) -> list[str]:
        """Record ``token`` in its subject's index. Returns evicted values."""
        index_key = self.SUBJECT_PREFIX + token.subject_user_id
        for _ in range(self.MAX_CAS_ATTEMPTS):
            now = self._clock()
            raw = await self._store.get(index_key)
            entries = json.loads(raw) if raw else []
            live = [[v, exp] for v, exp in entries if exp > now]
            live.append([token.value, token.expires_at_ms])
            live.sort(key=lambda e: e[1])
            evicted = [v for v, _ in live[:-self._max_tokens]]
            live = live[-self._max_tokens:]

            ttl = max(exp for _, exp in live) - now
            if await self._store.compare_and_swap(index_key, raw, json.dumps(live), ttl_ms=ttl):
                return evicted
        logger.warning("CSRF index contention for %s", token.subject_user_id)
        raise StoreUnavailableError(f"CSRF index contention for {token.subject_user_id}")
