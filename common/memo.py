_MEMO_ATTR = "_cafepos_memo"


def request_memo(request, key, callback):
    """Return `callback()` once per request for `key`; later calls reuse the first result.

    Without a request (management commands, services called directly) the callback
    simply runs.
    """
    if request is None:
        return callback()

    # DRF wraps the Django request; memoise on the underlying one so views and
    # middleware share a single map.
    target = getattr(request, "_request", request)
    memo = getattr(target, _MEMO_ATTR, None)
    if memo is None:
        memo = {}
        setattr(target, _MEMO_ATTR, memo)
    if key not in memo:
        memo[key] = callback()
    return memo[key]
