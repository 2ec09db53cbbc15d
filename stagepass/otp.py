from __future__ import annotations
import hashlib
import logging
import secrets
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import ORJSONResponse
from jose import jwt
from jose.exceptions import JWTError
from pydantic import BaseModel
from sqlalchemy import delete, select

from .config import (
    JWT_SECRET, OTP_BURST, OTP_LENGTH, OTP_MAX_ATTEMPTS, OTP_PER_HOUR,
    OTP_RESEND_COOLDOWN_SECONDS, OTP_TOKEN_TTL_SECONDS, OTP_TTL_SECONDS,
)
from .deps import client_ip, gated_session, get_http, get_redis, tx
from .errors import GatewayError, InvalidInput, RateLimited
from .helpers import is_valid_email, is_valid_phone, now_ts
from .infra.ratelimit import token_bucket
from .infra.sql import GatedSession
from .infra.timings import timeit
from .model import ledger
from .model.cache import invalidate_leaderboard
from .model.orm import OtpCode
from .notify import otp_text, send_email, send_sms

logger = logging.getLogger(__name__)

router = APIRouter(tags=["otp"])

JWT_ALGORITHM = "HS256"


class OtpTarget(BaseModel):
    method: str
    email: Optional[str] = None
    phone: Optional[str] = None


class OtpCheck(OtpTarget):
    code: str


class FreeVoteReq(BaseModel):
    artist_id: str


# ----------------------------
# Codes + tokens
# ----------------------------
def generate_code(length: int = OTP_LENGTH) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def mint_token(email: Optional[str], phone: Optional[str],
               ttl_seconds: int = OTP_TOKEN_TTL_SECONDS) -> str:
    payload = {
        "email": email,
        "phone": phone,
        "verified": True,
        "exp": int(now_ts() + ttl_seconds),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(401, detail="invalid or expired token")
    if not payload.get("verified"):
        raise HTTPException(401, detail="identity not verified")
    if not (payload.get("email") or payload.get("phone")):
        raise HTTPException(401, detail="invalid token")
    return payload


def _target(req: OtpTarget) -> tuple[str, str]:
    """(column, value) the code is bound to."""
    if req.method not in ("email", "sms"):
        raise InvalidInput("Invalid method")
    if req.method == "email":
        if not is_valid_email(req.email):
            raise InvalidInput("Email is required")
        return "email", req.email.strip().lower()
    if not is_valid_phone(req.phone):
        raise InvalidInput("Phone number is required")
    return "phone", req.phone.strip()


def _match(column: str, value: str):
    return getattr(OtpCode, column) == value


# ----------------------------
# Endpoints
# ----------------------------
async def _issue(request: Request, req: OtpTarget, gs: GatedSession,
                 r: redis.Redis, http: httpx.AsyncClient) -> dict:
    column, value = _target(req)
    if not await token_bucket(r, f"otp:{client_ip(request)}", OTP_BURST,
                              OTP_PER_HOUR / 3600.0):
        raise RateLimited("Too many verification requests")

    now = now_ts()
    code = generate_code()
    async with tx(gs) as db:
        recent = (await db.execute(
            select(OtpCode.id).where(
                _match(column, value),
                OtpCode.created_at >= now - OTP_RESEND_COOLDOWN_SECONDS,
            ).limit(1)
        )).first()
        if recent is not None:
            raise RateLimited(
                "Please wait 5 minutes before requesting another code"
            )
        # one live code per target
        await db.execute(delete(OtpCode).where(_match(column, value)))
        otp = OtpCode(
            email=value if column == "email" else None,
            phone=value if column == "phone" else None,
            code_hash=hash_code(code),
            method=req.method,
            attempts=0,
            expires_at=now + OTP_TTL_SECONDS,
            created_at=now,
        )
        db.add(otp)

    text = otp_text(code, OTP_TTL_SECONDS // 60)
    try:
        if req.method == "email":
            await send_email(http, value, "Your verification code", text)
        else:
            await send_sms(http, value, text)
    except GatewayError:
        # undelivered codes must not block the next request
        async with tx(gs) as db:
            await db.execute(delete(OtpCode).where(OtpCode.id == otp.id))
        raise

    logger.info("otp issued via %s", req.method)
    where = "email" if req.method == "email" else "phone"
    return {
        "success": True,
        "message": f"Verification code sent to your {where}",
        "expires_in": OTP_TTL_SECONDS,
    }


@router.post("/api/otp/send")
async def otp_send(
    req: OtpTarget, request: Request,
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
    http: httpx.AsyncClient = Depends(get_http),
):
    return await _issue(request, req, gs, r, http)


@router.post("/api/otp/resend")
async def otp_resend(
    req: OtpTarget, request: Request,
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
    http: httpx.AsyncClient = Depends(get_http),
):
    return await _issue(request, req, gs, r, http)


@router.post("/api/otp/verify")
async def otp_verify(req: OtpCheck,
                     gs: GatedSession = Depends(gated_session)):
    column, value = _target(req)
    if not req.code or not req.code.isdigit():
        raise InvalidInput("Verification code is required")

    now = now_ts()
    async with tx(gs) as db:
        otp = (await db.execute(
            select(OtpCode)
            .where(_match(column, value))
            .order_by(OtpCode.created_at.desc())
            .limit(1)
        )).scalars().first()
        if otp is None:
            raise InvalidInput("No verification code found")

        if otp.expires_at < now:
            await db.delete(otp)
            error = "Verification code has expired"
        elif otp.attempts >= OTP_MAX_ATTEMPTS:
            await db.delete(otp)
            error = "Too many failed attempts. Request a new code"
        elif otp.code_hash != hash_code(req.code.strip()):
            otp.attempts += 1
            left = OTP_MAX_ATTEMPTS - otp.attempts
            return ORJSONResponse(
                {"detail": "Invalid verification code",
                 "code": "VALIDATION_ERROR", "attempts_left": left},
                status_code=400,
            )
        else:
            await db.delete(otp)
            error = None

    if error:
        # the delete above is committed before we answer
        raise InvalidInput(error)

    token = mint_token(value if column == "email" else None,
                       value if column == "phone" else None)
    return {"success": True, "message": "Verified", "token": token,
            "expires_in": OTP_TOKEN_TTL_SECONDS}


def bearer_identity(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(401, detail="verification token required")
    claims = verify_token(token.strip())
    return claims.get("email") or claims.get("phone")


@router.post("/api/voting/free-vote")
async def free_vote(
    req: FreeVoteReq,
    identity: str = Depends(bearer_identity),
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
):
    async with timeit("ledger.free_vote"):
        result = await ledger.cast_free_vote(gs, identity, req.artist_id)
    await invalidate_leaderboard(r)
    return {"success": True, "reference": result.reference,
            "votes": result.total_votes}
