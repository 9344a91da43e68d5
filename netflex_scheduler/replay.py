import logging

logger = logging.getLogger(__name__)

REPLAY_TTL_SECONDS = 3600
KEY_PREFIX = "scheduler-idempotency"


def replay_key(job_id: str, processed_at: str) -> str:
    return f"{KEY_PREFIX}/{job_id}:{processed_at}"


class ReplayGuard:
    """Remembers callback deliveries for an hour so each one runs at most once.

    Uses a single ``SET key 1 NX EX ttl`` so two concurrent deliveries of the
    same callback cannot both pass.
    """

    def __init__(self, redis_client, ttl_seconds: int = REPLAY_TTL_SECONDS):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    async def check_and_record(self, job_id: str, processed_at: str) -> bool:
        recorded = await self.redis.set(replay_key(job_id, processed_at), "1", ex=self.ttl_seconds, nx=True)
        if not recorded:
            logger.warning("Duplicate callback delivery: job=%s processed_at=%s", job_id, processed_at)
        return bool(recorded)
