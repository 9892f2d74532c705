"""Cached availability checks for all registered providers."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Callable

from ..schemas.provider import ProviderConfig
from .providers import create_provider, get_provider_ids

logger = logging.getLogger(__name__)

ConfigLookup = Callable[[str], ProviderConfig]


@dataclass
class AvailabilityStatus:
    """Last probe outcome for one provider."""

    available: bool
    checked_at: float
    error: str | None = None
    install_instructions: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_cache: dict[str, AvailabilityStatus] = {}
_lock = threading.Lock()
_checking = False


def check_provider_availability(
    provider_id: str, config: ProviderConfig | None = None, timeout: float | None = None
) -> AvailabilityStatus:
    """Probe one provider and record the result in the cache.

    Unknown provider ids and invalid configs are recorded as unavailable.
    """
    try:
        provider = create_provider(provider_id, config=config)
    except ValueError as e:
        status = AvailabilityStatus(available=False, checked_at=time.time(), error=str(e))
    else:
        available = provider.test_availability(timeout=timeout)
        status = AvailabilityStatus(
            available=available,
            checked_at=time.time(),
            error=None if available else f"{provider.display_name} CLI not found or not responding",
            install_instructions=None if available else provider.install_instructions,
        )
    with _lock:
        _cache[provider_id] = status
    logger.info("Provider %s available: %s", provider_id, status.available)
    return status


def check_all_providers(
    priority_id: str | None = None,
    config_lookup: ConfigLookup | None = None,
    timeout: float | None = None,
) -> dict[str, AvailabilityStatus]:
    """Probe every registered provider.

    The priority provider (usually the configured default) is checked first so
    callers can use it as soon as possible; the rest run in parallel. A call
    made while another check is running returns the current cache instead.
    """
    global _checking
    with _lock:
        if _checking:
            logger.debug("Availability check already in progress")
            return dict(_cache)
        _checking = True

    def _check(provider_id: str) -> None:
        try:
            config = config_lookup(provider_id) if config_lookup else None
        except ValueError as e:
            logger.warning("Invalid config for provider %s: %s", provider_id, e)
            with _lock:
                _cache[provider_id] = AvailabilityStatus(available=False, checked_at=time.time(), error=str(e))
            return
        check_provider_availability(provider_id, config=config, timeout=timeout)

    try:
        provider_ids = get_provider_ids()
        if priority_id in provider_ids:
            _check(priority_id)
            provider_ids = [pid for pid in provider_ids if pid != priority_id]
        if provider_ids:
            with ThreadPoolExecutor(max_workers=len(provider_ids)) as executor:
                list(executor.map(_check, provider_ids))
    finally:
        with _lock:
            _checking = False
    return get_all_cached_availability()


def get_cached_availability(provider_id: str) -> AvailabilityStatus | None:
    with _lock:
        return _cache.get(provider_id)


def get_all_cached_availability() -> dict[str, AvailabilityStatus]:
    with _lock:
        return dict(_cache)


def is_check_in_progress() -> bool:
    return _checking


def clear_cache() -> None:
    with _lock:
        _cache.clear()


def reset_state() -> None:
    """Clear the cache and the in-progress flag (used by tests)."""
    global _checking
    with _lock:
        _cache.clear()
        _checking = False
