import json
from typing import Optional
from urllib.parse import parse_qs

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from .. import redis_helper
from ..auth import digest_credentials, require_headers
from ..callback import CallbackHandler
from ..config import AUTH_MODE_TOKEN, CALLBACK_PATH, load_settings
from ..errors import AuthenticationFailure
from ..jobs import registry
from ..replay import ReplayGuard
from ..signing import DigestCredentials, token_from_payload

router = APIRouter()


async def get_callback_handler() -> CallbackHandler:
    settings = load_settings()
    redis_client = await redis_helper.get_redis()
    return CallbackHandler(
        ReplayGuard(redis_client),
        key_source=lambda: load_settings().candidate_keys(),
        registry=registry,
        debug=settings.is_local,
        time_limit=settings.execution_time_limit,
        timezone_name=settings.timezone,
    )


@router.post(CALLBACK_PATH, name="netflex.queue.worker")
async def scheduler_callback(
    request: Request,
    credentials: Optional[DigestCredentials] = Depends(digest_credentials),
    handler: CallbackHandler = Depends(get_callback_handler),
):
    body = await request.body()
    if credentials is not None:
        status, result = await handler.handle_digest(credentials, body)
    else:
        token = await _token_from_request(request, body)
        if token is None:
            if load_settings().auth_mode == AUTH_MODE_TOKEN:
                raise AuthenticationFailure("token field is missing")
            require_headers(None, None, None)
        status, result = await handler.handle_token(token)
    return JSONResponse(result.model_dump(exclude_none=True), status_code=status)


async def _token_from_request(request: Request, body: bytes) -> Optional[str]:
    token = token_from_payload(dict(request.query_params))
    if token or not body:
        return token
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded"):
        fields = {k: v[0] for k, v in parse_qs(body.decode("utf-8", "replace")).items()}
        return token_from_payload(fields)
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    return token_from_payload(payload) if isinstance(payload, dict) else None
