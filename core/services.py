from common.memo import request_memo
from core.models import StoreSettings


def load_store_settings(request=None):
    """Return the singleton settings row, read at most once per request."""
    return request_memo(request, "store_settings", StoreSettings.load)


def load_store_settings_snapshot(request=None):
    return load_store_settings(request).snapshot()
