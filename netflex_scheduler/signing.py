"""Callback credentials.

Digest mode: the scheduler sends ``X-NF-JOB-ID``, ``X-NF-JOB-PROCESSED-AT`` and
``X-NF-DIGEST`` alongside the raw body, where the digest is
``HMAC-SHA512(key, "{id}:{processedAt}:{body}")`` in hex.

Token mode: the payload carries a JWT (HS256) whose ``data`` claim is the
envelope, ``sub`` the job id, and ``iat``/``exp`` the issue and expiry times.

Verification only authenticates. Rebuilding the envelope from the verified
payload is a separate step and fails with ``DeserializationFailure``.
"""
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

import jwt
from pydantic import ValidationError

from .errors import DeserializationFailure, VerificationFailure
from .schemas import JobEnvelope

TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class DigestCredentials:
    job_id: str
    processed_at: str
    digest: str


@dataclass(frozen=True)
class VerifiedCallback:
    job_id: str
    # replay key component: processed-at in digest mode, iat in token mode
    processed_at: str
    # raw body in digest mode, the decoded ``data`` claim in token mode
    payload: Any

    def envelope(self) -> JobEnvelope:
        return parse_envelope(self.payload, self.job_id)


def compute_digest(key: str, job_id: str, processed_at: str, body: Union[bytes, str]) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    message = f"{job_id}:{processed_at}:".encode("utf-8") + body
    return hmac.new(key.encode("utf-8"), message, hashlib.sha512).hexdigest()


def sign_digest(key: str, job_id: str, processed_at: str, body: Union[bytes, str]) -> DigestCredentials:
    return DigestCredentials(job_id, processed_at, compute_digest(key, job_id, processed_at, body))


def verify_digest(credentials: DigestCredentials, body: bytes, candidate_keys: Iterable[str]) -> VerifiedCallback:
    matched = False
    for key in candidate_keys:
        expected = compute_digest(key, credentials.job_id, credentials.processed_at, body)
        if hmac.compare_digest(expected, credentials.digest.lower()):
            matched = True
            break
    if not matched:
        raise VerificationFailure(
            VerificationFailure.NO_MATCHING_KEY,
            "Digest does not match critical components",
            job_id=credentials.job_id,
        )
    return VerifiedCallback(credentials.job_id, credentials.processed_at, body)


def sign_token(envelope: JobEnvelope, key: str, ttl_seconds: int, issued_at: Optional[int] = None) -> str:
    issued_at = int(time.time()) if issued_at is None else issued_at
    claims = {
        "sub": envelope.id,
        "iat": issued_at,
        "exp": issued_at + ttl_seconds,
        "data": envelope.to_payload(),
    }
    return jwt.encode(claims, key, algorithm=TOKEN_ALGORITHM)


def verify_token(token: str, candidate_keys: Iterable[str]) -> VerifiedCallback:
    try:
        jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise VerificationFailure(VerificationFailure.MALFORMED, f"Malformed token: {exc}") from exc

    claims = None
    for key in candidate_keys:
        try:
            # expiry is checked after a signature match so a stale token is
            # reported as expired rather than as signed with an unknown key
            claims = jwt.decode(
                token,
                key,
                algorithms=[TOKEN_ALGORITHM],
                options={"verify_exp": False, "require": ["exp", "iat", "sub"]},
            )
            break
        except jwt.InvalidSignatureError:
            continue
        except jwt.PyJWTError as exc:
            raise VerificationFailure(VerificationFailure.MALFORMED, f"Malformed token: {exc}") from exc
    if claims is None:
        raise VerificationFailure(VerificationFailure.NO_MATCHING_KEY, "Token signature does not match")

    job_id = str(claims["sub"])
    if claims["exp"] < time.time():
        raise VerificationFailure(VerificationFailure.EXPIRED, "Token has expired", job_id=job_id)

    data = claims.get("data")
    if isinstance(data, dict) and "uuid" in data and str(data["uuid"]) != job_id:
        raise VerificationFailure(VerificationFailure.MALFORMED, "Token subject does not match job", job_id=job_id)
    return VerifiedCallback(job_id, str(claims["iat"]), data)


def parse_envelope(payload: Any, job_id: Optional[str] = None) -> JobEnvelope:
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise DeserializationFailure(f"Payload is not JSON: {exc}", job_id=job_id) from exc
    try:
        return JobEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise DeserializationFailure(f"Invalid job envelope: {exc}", job_id=job_id) from exc


def token_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get("task") or payload.get("token")


def sign(envelope: JobEnvelope, key: str, ttl_seconds: int) -> str:
    return sign_token(envelope, key, ttl_seconds)


def verify(
    credentials: Union[str, DigestCredentials],
    candidate_keys: Iterable[str],
    body: bytes = b"",
) -> VerifiedCallback:
    """Verify either a token or a digest tuple against every candidate key."""
    keys = list(candidate_keys)
    if isinstance(credentials, DigestCredentials):
        return verify_digest(credentials, body, keys)
    return verify_token(credentials, keys)
