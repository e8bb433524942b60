from __future__ import annotations

from datetime import datetime
from typing import Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import InvalidRefreshToken, InvalidTokenError
from tenantauth.service.passwords import SecretHasher
from tenantauth.service.retry import StoreRetry
from tenantauth.service.tokens import TokenCodec
from tenantauth.storage.models import RefreshToken

logger = get_logger(__name__)


class RefreshSessionStore:
    """Hashed refresh-token records with rotate-on-use semantics.

    A record moves from issued to rotated (``replaced_by_id`` set), revoked, or
    expired. Only the argon2 hash of a raw token is persisted, so lookups list
    the user's live records and verify the presented token against each.
    """

    def __init__(
        self,
        store,
        codec: TokenCodec,
        hasher: SecretHasher,
        settings: Settings,
        *,
        retry: Optional[StoreRetry] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.hasher = hasher
        self.settings = settings
        self.retry = retry or StoreRetry(
            settings.store_retry_attempts, settings.store_retry_backoff_ms
        )

    def _new_record(
        self, user_id: str, *, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> tuple[str, RefreshToken]:
        raw = self.codec.sign_refresh_token(user_id)
        record = RefreshToken.new(
            user_id,
            self.hasher.hash(raw),
            self.settings.refresh_token_ttl_days,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return raw, record

    async def _find_matching(self, user_id: str, raw_token: str) -> list[RefreshToken]:
        live = await self.retry.call(
            "list_live_refresh_tokens",
            self.store.list_live_refresh_tokens,
            user_id,
            datetime.utcnow(),
        )
        return [record for record in live if self.hasher.verify(record.token_hash, raw_token)]

    def _subject(self, raw_token: str) -> str:
        try:
            payload = self.codec.verify_refresh_token(raw_token)
        except InvalidTokenError:
            raise InvalidRefreshToken()
        return str(payload["sub"])

    async def create_refresh_token(
        self,
        user_id: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        raw, record = self._new_record(user_id, ip_addr=ip_addr, user_agent=user_agent)
        await self.retry.call("create_refresh_token", self.store.create_refresh_token, record)
        logger.info("refresh_token_issued", user_id=user_id, refresh_id=record.id)
        return raw

    async def rotate_refresh_token(
        self,
        raw_old_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        user_id = self._subject(raw_old_token)
        matches = await self._find_matching(user_id, raw_old_token)
        if not matches:
            # Valid signature but no live record: replayed, revoked or expired
            logger.warning("refresh_token_not_live", user_id=user_id)
            raise InvalidRefreshToken()

        raw_new, record = self._new_record(user_id, ip_addr=ip_addr, user_agent=user_agent)
        rotated = await self.retry.call(
            "rotate_refresh_token", self.store.rotate_refresh_token, matches[0].id, record
        )
        if rotated is None:
            # Lost the compare-and-swap to a concurrent rotation of the same token
            logger.warning(
                "refresh_token_rotation_race", user_id=user_id, refresh_id=matches[0].id
            )
            raise InvalidRefreshToken()
        logger.info(
            "refresh_token_rotated",
            user_id=user_id,
            refresh_id=matches[0].id,
            replaced_by_id=record.id,
        )
        return raw_new

    async def revoke_refresh_token(self, raw_token: str) -> bool:
        """Revoke every live record matching ``raw_token``.

        Returns ``False`` when nothing was left to revoke.
        """
        user_id = self._subject(raw_token)
        revoked_any = False
        for record in await self._find_matching(user_id, raw_token):
            flipped = await self.retry.call(
                "revoke_refresh_token", self.store.revoke_refresh_token, record.id
            )
            revoked_any = revoked_any or flipped
        logger.info("refresh_token_revoke", user_id=user_id, revoked=revoked_any)
        return revoked_any

    async def purge_expired(self) -> int:
        removed = await self.retry.call(
            "delete_expired_refresh_tokens",
            self.store.delete_expired_refresh_tokens,
            datetime.utcnow(),
        )
        if removed:
            logger.info("refresh_tokens_purged", count=removed)
        return removed
