"""Grouped cache with per-group invalidation."""

from typing import Any, Optional

from kvstash.config import CacheSettings
from kvstash.utils.logger import log_info, log_warning, log_debug
from .errors import CacheError
from .manager import CacheBackendKind, CacheManager

GROUP_KEY_PREFIX = "group_"
GENERATION_SUFFIX = "__gen"

# Reserved as separators inside derived keys
_RESERVED = ("@", ":")


class GroupedCache:
    """Cache partitioned into named groups that can be flushed independently.

    Every group has a generation counter stored under ``group_<name>__gen``.
    Entry keys embed the current generation, so bumping the counter makes
    every variant of the group (one per dimension tuple, e.g. per locale)
    unreachable at once, in every process sharing the backend. Orphaned
    entries age out with their TTL.

    ``get`` returns False on a miss so callers can tell "not cached" apart
    from a cached empty value.
    """

    def __init__(
        self,
        namespace_prefix: str = "theme_settings_",
        *,
        manager: Optional[CacheManager] = None,
        settings: Optional[CacheSettings] = None,
        bypass: Optional[bool] = None,
        default_ttl: Optional[int] = None,
    ):
        if settings is None:
            settings = manager.settings if manager is not None else CacheSettings()

        self.settings = settings
        self.namespace_prefix = namespace_prefix
        self.default_ttl = settings.cache_group_ttl_seconds if default_ttl is None else default_ttl
        self.bypass = settings.cache_group_bypass if bypass is None else bypass
        self.manager = manager or CacheManager(
            CacheBackendKind.MEMORY,
            namespace_prefix,
            self.default_ttl,
            settings=settings,
        )

        if self.bypass:
            log_info("Grouped cache bypass enabled", namespace_prefix=namespace_prefix)

    @staticmethod
    def _check_part(value: str, what: str) -> str:
        text = str(value)
        if what == "group" and not text:
            raise ValueError("Group name must not be empty")
        if any(sep in text for sep in _RESERVED):
            raise ValueError(f"{what} '{text}' must not contain {' or '.join(_RESERVED)}")
        return text

    def generation_key(self, group: str) -> str:
        """Key of the generation counter for group."""
        return f"{GROUP_KEY_PREFIX}{self._check_part(group, 'group')}{GENERATION_SUFFIX}"

    def group_key(self, group: str, *dimensions: Any, generation: int = 0) -> str:
        """Derive the entry key for group, generation and dimensions."""
        key = f"{GROUP_KEY_PREFIX}{self._check_part(group, 'group')}@{generation}"
        for dimension in dimensions:
            key += f":{self._check_part(dimension, 'dimension')}"
        return key

    async def _generation(self, group: str) -> int:
        generation = await self.manager.get(self.generation_key(group), 0)
        return generation if isinstance(generation, int) else 0

    async def get(self, group: str, *dimensions: Any) -> Any:
        """Get cached data for group, or False on a miss."""
        if self.bypass:
            return False

        generation = await self._generation(group)
        return await self.manager.get(
            self.group_key(group, *dimensions, generation=generation), False
        )

    async def set(self, group: str, data: Any, ttl: Optional[int] = None, *dimensions: Any) -> bool:
        """Cache data for group under the current generation."""
        if self.bypass:
            return False

        generation = await self._generation(group)
        return await self.manager.set(
            self.group_key(group, *dimensions, generation=generation),
            data,
            self.default_ttl if ttl is None else ttl,
        )

    async def flush_group(self, group: str) -> bool:
        """Invalidate every entry of group, leaving other groups intact."""
        if self.bypass:
            return True

        try:
            # ttl=0: the generation itself never expires
            generation = await self.manager.increment(self.generation_key(group), 1, ttl=0)
        except CacheError as e:
            log_warning("Group flush failed", group=group, error_type=type(e).__name__, error=str(e))
            return False

        log_debug("Cache group flushed", group=group, generation=generation)
        return True

    async def flush_all(self) -> bool:
        """Remove everything under this cache's namespace."""
        if self.bypass:
            return True

        flushed = await self.manager.flush()
        if flushed:
            log_info("Grouped cache flushed", namespace_prefix=self.namespace_prefix)
        return flushed

    async def close(self) -> None:
        await self.manager.close()
