from __future__ import annotations
import logging
import uuid
from typing import Callable, AsyncContextManager, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import User
from ..helpers import now_ts, normalize_identity_part

logger = logging.getLogger(__name__)


def make_unique_key(name: str, surname: str, phone: str,
                    id_number: str) -> str:
    return "|".join(
        normalize_identity_part(part)
        for part in (name, surname, phone, id_number)
    )


class UserStore:
    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]],
    ) -> None:
        self.db = db
        self.gated = gated

    async def get(self, user_id: str) -> Optional[User]:
        async with self.gated():
            async with self.db.begin():
                return await self.db.get(User, user_id)

    async def _by_unique_key(self, unique_key: str) -> Optional[User]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(User).where(User.unique_key == unique_key)
                )).scalars().first()

    async def find_or_create(
        self, *, name: str, surname: str, phone: str, id_number: str,
        email: Optional[str] = None,
    ) -> Tuple[User, bool]:
        """
        Registration is keyed on the normalized identity, so repeated
        submissions of the same person (different casing, spacing, accents
        or email) land on the same row. Returns (user, created).
        """
        unique_key = make_unique_key(name, surname, phone, id_number)
        user = await self._by_unique_key(unique_key)
        if user is not None:
            return user, False

        user = User(
            id=uuid.uuid4().hex,
            name=name.strip(),
            surname=surname.strip(),
            phone=phone.strip(),
            id_number=id_number.strip(),
            email=(email or "").strip() or None,
            unique_key=unique_key,
            created_at=now_ts(),
        )
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(user)
        except IntegrityError:
            # a concurrent registration of the same person won the insert
            logger.info("registration race on %s, reusing winner",
                        unique_key)
            self.db.expunge_all()
            winner = await self._by_unique_key(unique_key)
            if winner is None:
                raise
            return winner, False
        return user, True
