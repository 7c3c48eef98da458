from django.apps import AppConfig, apps
from django.conf import settings

from .store import (
    DEFAULT_MAX_ENTRIES,
    DEFAULT_SWEEP_BATCH,
    DEFAULT_SWEEP_THRESHOLD,
    BucketStore,
    LockedBucketStore,
)


def build_store():
    """Create the counter store described by the RATE_LIMIT_STORE_* settings."""
    store_cls = LockedBucketStore
    if not getattr(settings, 'RATE_LIMIT_STORE_THREADSAFE', True):
        store_cls = BucketStore
    return store_cls(
        max_entries=getattr(settings, 'RATE_LIMIT_STORE_MAX_ENTRIES', DEFAULT_MAX_ENTRIES),
        sweep_threshold=getattr(settings, 'RATE_LIMIT_STORE_SWEEP_THRESHOLD', DEFAULT_SWEEP_THRESHOLD),
        sweep_batch=getattr(settings, 'RATE_LIMIT_STORE_SWEEP_BATCH', DEFAULT_SWEEP_BATCH),
    )


class RequestLimitsConfig(AppConfig):
    name = 'request_limits'
    verbose_name = 'Request rate limits'

    store = None

    def ready(self):
        # one store per process, owned by app start-up
        self.store = build_store()


def get_store():
    return apps.get_app_config('request_limits').store
