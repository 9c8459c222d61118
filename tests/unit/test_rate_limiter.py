"""Unit tests for the crawl start rate limiter."""

import time
from unittest.mock import patch

import pytest

from pagecrawl.middleware.rate_limiter import (
    RateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)


class TestRateLimiter:
    """Test suite for the RateLimiter class."""

    def test_allows_requests_under_limit(self):
        """Starts under the limit should be allowed."""
        limiter = RateLimiter(max_requests=5, window_seconds=60)

        for _ in range(5):
            assert limiter.check_rate_limit("10.0.0.1") is True

    def test_blocks_requests_over_limit(self):
        """Starts over the limit should be blocked."""
        limiter = RateLimiter(max_requests=3, window_seconds=60)

        for _ in range(3):
            assert limiter.check_rate_limit("10.0.0.1") is True

        assert limiter.check_rate_limit("10.0.0.1") is False

    def test_different_clients_have_separate_limits(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        assert limiter.check_rate_limit("client1") is True
        assert limiter.check_rate_limit("client1") is True
        assert limiter.check_rate_limit("client1") is False

        assert limiter.check_rate_limit("client2") is True
        assert limiter.check_rate_limit("client2") is True
        assert limiter.check_rate_limit("client2") is False

    @pytest.mark.slow
    def test_window_expiry_allows_new_requests(self):
        """After the window passes, new starts are allowed."""
        limiter = RateLimiter(max_requests=2, window_seconds=1)

        assert limiter.check_rate_limit("c") is True
        assert limiter.check_rate_limit("c") is True
        assert limiter.check_rate_limit("c") is False

        time.sleep(1.1)

        assert limiter.check_rate_limit("c") is True

    def test_rejected_starts_not_counted(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.check_rate_limit("c")
        limiter.check_rate_limit("c")
        limiter.check_rate_limit("c")
        assert limiter.get_remaining_requests("c") == 0
        assert len(limiter._starts["c"]) == 1

    def test_get_remaining_requests(self):
        limiter = RateLimiter(max_requests=5, window_seconds=60)

        assert limiter.get_remaining_requests("c") == 5
        limiter.check_rate_limit("c")
        assert limiter.get_remaining_requests("c") == 4

    def test_get_retry_after(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        assert limiter.get_retry_after("c") == 0
        limiter.check_rate_limit("c")

        retry_after = limiter.get_retry_after("c")
        assert 1 <= retry_after <= 60

    def test_reset_single_client(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        limiter.check_rate_limit("client1")
        limiter.check_rate_limit("client1")
        limiter.check_rate_limit("client2")

        limiter.reset("client1")

        assert limiter.get_remaining_requests("client1") == 2
        assert limiter.get_remaining_requests("client2") == 1

    def test_reset_all_clients(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60)

        limiter.check_rate_limit("client1")
        limiter.check_rate_limit("client2")
        limiter.reset()

        assert limiter.get_remaining_requests("client1") == 2
        assert limiter.get_remaining_requests("client2") == 2

    def test_thread_safety(self):
        """Rate limiter should be thread-safe."""
        import threading

        limiter = RateLimiter(max_requests=100, window_seconds=60)
        results = []

        def make_request():
            results.append(limiter.check_rate_limit("c"))

        threads = [threading.Thread(target=make_request) for _ in range(150)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(results) == 100
        assert len(results) == 150


class TestRateLimiterGlobal:
    """Test the global rate limiter instance."""

    def test_get_rate_limiter_returns_singleton(self, mock_settings):
        assert get_rate_limiter() is get_rate_limiter()

    def test_reset_creates_new_instance(self, mock_settings):
        limiter1 = get_rate_limiter()
        reset_rate_limiter()
        assert get_rate_limiter() is not limiter1

    def test_global_limiter_sized_from_settings(self, mock_settings):
        limiter = get_rate_limiter()

        assert limiter._max_requests == mock_settings.rate_limit_max_crawl_starts
        assert limiter._window.total_seconds() == mock_settings.rate_limit_window_seconds


class TestRateLimiterLogging:
    """Test rate limiter logging behavior."""

    def test_logs_warning_when_limit_exceeded(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)

        with patch("pagecrawl.middleware.rate_limiter.logfire") as mock_logfire:
            limiter.check_rate_limit("10.0.0.1")
            limiter.check_rate_limit("10.0.0.1")

            mock_logfire.warning.assert_called_once()
            call_kwargs = mock_logfire.warning.call_args[1]
            assert call_kwargs["client_id"] == "10.0.0.1"
            assert call_kwargs["start_count"] == 1
            assert call_kwargs["max_requests"] == 1
