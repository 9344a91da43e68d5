from typing import Optional

from fastapi import Security
from fastapi.security.api_key import APIKeyHeader

from .errors import AuthenticationFailure
from .signing import DigestCredentials

JOB_ID_HEADER = "X-NF-JOB-ID"
PROCESSED_AT_HEADER = "X-NF-JOB-PROCESSED-AT"
DIGEST_HEADER = "X-NF-DIGEST"

job_id_header = APIKeyHeader(name=JOB_ID_HEADER, auto_error=False)
processed_at_header = APIKeyHeader(name=PROCESSED_AT_HEADER, auto_error=False)
digest_header = APIKeyHeader(name=DIGEST_HEADER, auto_error=False)


async def digest_credentials(
    job_id: Optional[str] = Security(job_id_header),
    processed_at: Optional[str] = Security(processed_at_header),
    digest: Optional[str] = Security(digest_header),
) -> Optional[DigestCredentials]:
    """Digest headers of a callback, or None when the caller sent none of them."""
    if job_id is None and processed_at is None and digest is None:
        return None
    require_headers(job_id, processed_at, digest)
    return DigestCredentials(job_id, processed_at, digest)


def require_headers(job_id: Optional[str], processed_at: Optional[str], digest: Optional[str]):
    for name, value in ((JOB_ID_HEADER, job_id), (PROCESSED_AT_HEADER, processed_at), (DIGEST_HEADER, digest)):
        if not value:
            raise AuthenticationFailure(f"{name} header is missing")
