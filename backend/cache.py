import json
import logging

import redis

logger = logging.getLogger(__name__)

NAMESPACE = 'cache'
DEFAULT_TTL = 300

_MISSING = object()


def make_key(user_id, dataset_id=None, view='detail'):
    if dataset_id:
        return f'{NAMESPACE}:user:{user_id}:dataset:{dataset_id}:{view}'
    return f'{NAMESPACE}:user:{user_id}:datasets:{view}'


class DatasetCache:
    def __init__(self, client, ttl=DEFAULT_TTL):
        self.client = client
        self.ttl = ttl

    def get(self, key):
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return _MISSING
        if raw is None:
            return _MISSING
        return json.loads(raw)

    def set(self, key, value, ttl=None):
        try:
            self.client.setex(key, ttl or self.ttl, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.warning("Cache write failed for %s: %s", key, e)

    def get_or_compute(self, user_id, dataset_id, view, producer, ttl=None):
        key = make_key(user_id, dataset_id, view)
        value = self.get(key)
        if value is not _MISSING:
            return value
        value = producer()
        self.set(key, value, ttl)
        return value

    def _delete_matching(self, pattern):
        deleted = 0
        for key in self.client.scan_iter(match=pattern):
            deleted += self.client.delete(key)
        return deleted

    def invalidate_dataset(self, user_id, dataset_id):
        """Drop every view of the dataset and every list view of its owner."""
        try:
            deleted = self._delete_matching(make_key(user_id, dataset_id, '*'))
            deleted += self._delete_matching(make_key(user_id, None, '*'))
        except redis.RedisError as e:
            logger.warning("Cache invalidation failed for dataset %s: %s", dataset_id, e)
            return 0
        logger.debug("Invalidated %d cache entries for dataset %s", deleted, dataset_id)
        return deleted


def create_cache(config, client=None):
    if client is None:
        client = redis.Redis.from_url(config.get('REDIS_URL', 'redis://localhost:6379/0'))
    return DatasetCache(client, ttl=config.get('CACHE_TTL_SECONDS', DEFAULT_TTL))
