# bulkmart/services/pickup_tokens.py
from __future__ import annotations

import hashlib
import secrets
import string
from dataclasses import dataclass

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.models.reservation import Reservation

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
_MAX_ATTEMPTS = 8


@dataclass(frozen=True)
class PickupCredential:
    qr_code_hash: str
    verification_code: str


def new_qr_hash() -> str:
    return hashlib.sha256(secrets.token_bytes(32)).hexdigest()


def new_verification_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(code: str) -> str:
    """人工输入的取货码：去空白 / 连字符，统一大写。"""
    return "".join(ch for ch in (code or "") if ch.isalnum()).upper()


async def generate_credential(session: AsyncSession) -> PickupCredential:
    """
    生成一对互相独立的取货凭证，并确认与现有预约不冲突。
    唯一约束仍由 reservations 表兜底。
    """
    for _ in range(_MAX_ATTEMPTS):
        qr_hash = new_qr_hash()
        code = new_verification_code()
        clash = await session.execute(
            sa.select(Reservation.id)
            .where(
                sa.or_(
                    Reservation.qr_code_hash == qr_hash,
                    Reservation.verification_code == code,
                )
            )
            .limit(1)
        )
        if clash.first() is None:
            return PickupCredential(qr_code_hash=qr_hash, verification_code=code)
    raise RuntimeError("could not generate a unique pickup credential")
