"""Named in-process locks serializing settlement mutations.

Locks are always taken in the order owner, batch cohort, request. All locks are re-entrant so a thread already holding a lock may call back into the engine.

Only safe for single process deployments. Multiple processes still get consistent data thanks to serializable transactions, but may see more conflict replays.
"""

import threading

_locks = {}

_registry_lock = threading.Lock()


def get_or_create_lock(name):
    with _registry_lock:
        if name not in _locks:
            _locks[name] = threading.RLock()
        return _locks[name]


def owner_lock(owner_id):
    return get_or_create_lock("owner:{}".format(owner_id))


def cohort_lock(cohort):
    return get_or_create_lock("cohort:{}".format(cohort))


def request_lock(request_id):
    return get_or_create_lock("request:{}".format(request_id))

