"""Tests for the provider availability cache."""

import threading
import time
from unittest.mock import patch

from reviewpipe.schemas.provider import ProviderConfig
from reviewpipe.util import provider_availability
from reviewpipe.util.provider_availability import (
    check_all_providers,
    check_provider_availability,
    clear_cache,
    get_all_cached_availability,
    get_cached_availability,
)
from reviewpipe.util.providers import AIProvider


class TestCheckProviderAvailability:
    """Test cases for single-provider checks."""

    def test_available_provider_cached(self, fake_cli):
        cli = fake_cli("print('pi 1.0')")
        status = check_provider_availability("pi", config=ProviderConfig(command=cli))
        assert status.available is True
        assert status.error is None
        assert get_cached_availability("pi") is status

    def test_unavailable_provider(self, tmp_path):
        status = check_provider_availability("claude", config=ProviderConfig(command=str(tmp_path / "missing")))
        assert status.available is False
        assert "Claude" in status.error
        assert "npm install" in status.install_instructions

    def test_unknown_provider(self):
        status = check_provider_availability("gemini")
        assert status.available is False
        assert "Unsupported provider" in status.error

    def test_to_dict(self):
        with patch.object(AIProvider, "test_availability", return_value=True):
            data = check_provider_availability("pi").to_dict()
        assert data["available"] is True
        assert set(data) == {"available", "checked_at", "error", "install_instructions"}


class TestCheckAllProviders:
    """Test cases for check_all_providers."""

    def test_checks_every_provider(self):
        with patch.object(AIProvider, "test_availability", return_value=False):
            results = check_all_providers()
        assert set(results) == {"claude", "cursor-agent", "pi"}
        assert not any(status.available for status in results.values())

    def test_priority_provider_checked_first(self):
        order = []

        def fake_check(self, timeout=None):
            order.append(self.provider_id)
            return True

        with patch.object(AIProvider, "test_availability", fake_check):
            check_all_providers(priority_id="pi")
        assert order[0] == "pi"
        assert sorted(order) == ["claude", "cursor-agent", "pi"]

    def test_config_lookup_is_used(self, tmp_path):
        seen = []

        def lookup(provider_id):
            seen.append(provider_id)
            return ProviderConfig(command=str(tmp_path / f"missing-{provider_id}"))

        check_all_providers(config_lookup=lookup)
        assert sorted(seen) == ["claude", "cursor-agent", "pi"]

    def test_invalid_config_entry_marks_provider_unavailable(self):
        def lookup(provider_id):
            if provider_id == "cursor-agent":
                return ProviderConfig.model_validate({"models": [{"id": "no-tier"}]})
            return ProviderConfig()

        with patch.object(AIProvider, "test_availability", return_value=True):
            results = check_all_providers(priority_id="cursor-agent", config_lookup=lookup)
        assert set(results) == {"claude", "cursor-agent", "pi"}
        assert results["cursor-agent"].available is False
        assert "tier" in results["cursor-agent"].error
        assert results["claude"].available is True
        assert results["pi"].available is True
        assert not provider_availability.is_check_in_progress()

    def test_install_instructions_from_config(self, tmp_path):
        config = ProviderConfig(command=str(tmp_path / "missing"), install_instructions="use the internal mirror")
        status = check_provider_availability("pi", config=config)
        assert status.install_instructions == "use the internal mirror"

    def test_overlapping_run_returns_cache(self):
        started = threading.Event()
        release = threading.Event()

        def slow_check(self, timeout=None):
            started.set()
            release.wait(5)
            return True

        with patch.object(AIProvider, "test_availability", slow_check):
            worker = threading.Thread(target=check_all_providers, kwargs={"priority_id": "claude"})
            worker.start()
            started.wait(5)
            assert provider_availability.is_check_in_progress()
            assert check_all_providers() == {}
            release.set()
            worker.join(5)
        assert not provider_availability.is_check_in_progress()
        assert set(get_all_cached_availability()) == {"claude", "cursor-agent", "pi"}

    def test_clear_cache(self):
        with patch.object(AIProvider, "test_availability", return_value=True):
            check_provider_availability("pi")
        clear_cache()
        assert get_all_cached_availability() == {}

    def test_checked_at_is_recent(self):
        with patch.object(AIProvider, "test_availability", return_value=True):
            status = check_provider_availability("claude")
        assert abs(status.checked_at - time.time()) < 60
