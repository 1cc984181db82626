# locks.py
def acquire_lock(redis_client, lock_key, ttl=10):
    return redis_client.set(lock_key, "locked", nx=True, ex=ttl)


def release_lock(redis_client, lock_key):
    redis_client.delete(lock_key)


def mark_seen(redis_client, key, ttl):
    """Record `key` once; returns False when it was already recorded."""
    return bool(redis_client.set(key, "1", nx=True, ex=ttl))


def forget_seen(redis_client, key):
    redis_client.delete(key)
