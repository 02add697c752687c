from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from courtflow.core.config import settings
from courtflow.core.logging_config import setup_logging


def _redis_url_for_celery(url: str) -> str:
    """Celery requires ssl_cert_reqs for rediss:// (e.g. managed Redis with TLS)."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["CERT_NONE"]
        return urlunparse(parsed._replace(query=urlencode(qs, doseq=True)))
    return url


setup_logging()

_redis_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery(
    "courtflow",
    broker=_redis_url,
    backend=_redis_url,
    include=["courtflow.tasks.jobs"],
)

celery.conf.timezone = "Asia/Ho_Chi_Minh"

celery.conf.beat_schedule = {
    "purge-expired-holds-every-minute": {
        "task": "courtflow.tasks.jobs.purge_expired_holds",
        "schedule": 60.0,
    },
}
