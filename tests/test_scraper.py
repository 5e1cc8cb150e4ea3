from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from harvester.errors import NetworkFailure
from harvester.rate_limit import ConcurrencyGovernor
from harvester.retry import RetryPolicy
from harvester.scraper import BrowserPool, PageFetcher


def _result(success=True, status_code=200, html="<main><p>Estate Cabernet Sauvignon, $85</p></main>"):
    return SimpleNamespace(
        success=success, status_code=status_code, html=html, error_message="net::ERR_TIMED_OUT"
    )


@pytest.fixture
def crawler():
    crawler = MagicMock()
    crawler.start = AsyncMock()
    crawler.close = AsyncMock()
    crawler.arun = AsyncMock(return_value=_result())
    return crawler


@pytest.fixture
def pool(crawler):
    with patch("harvester.scraper.AsyncWebCrawler", return_value=crawler):
        yield BrowserPool()


@pytest.fixture
def fetcher(pool):
    return PageFetcher(pool, ConcurrencyGovernor(2, 0, 0), RetryPolicy(max_retries=1, initial_delay=0))


async def test_pool_starts_once_and_restarts_after_shutdown(pool, crawler):
    async with pool.session():
        assert pool.active == 1
    async with pool.session():
        pass
    assert crawler.start.await_count == 1
    assert pool.active == 0

    await pool.shutdown()
    crawler.close.assert_awaited_once()
    async with pool.session():
        pass
    assert crawler.start.await_count == 2


async def test_fetch_returns_text(fetcher):
    result = await fetcher.fetch("https://winery.example.com/wines")
    assert result.success
    assert result.text == "Estate Cabernet Sauvignon, $85"


@pytest.mark.parametrize("outcome", [_result(success=False), _result(status_code=503)])
async def test_bad_load_is_network_failure(fetcher, crawler, outcome):
    crawler.arun.return_value = outcome
    with pytest.raises(NetworkFailure):
        await fetcher.render("https://winery.example.com/wines")


async def test_fetch_reports_exhausted_retries(fetcher, crawler):
    crawler.arun.side_effect = TimeoutError("Timeout 30000ms exceeded")
    result = await fetcher.fetch("https://winery.example.com/wines")

    assert not result.success
    assert "Timeout" in result.error
    assert crawler.arun.await_count == 2


async def test_shutdown_with_loads_in_flight_warns_and_resets(pool, crawler, caplog):
    await pool.acquire()
    await pool.shutdown()

    assert pool.active == 0
    assert "1 page loads in flight" in caplog.text
    crawler.close.assert_awaited_once()
