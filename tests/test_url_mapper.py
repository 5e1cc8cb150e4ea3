from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import respx
from httpx import Response

from conftest import make_target
from harvester.config import Category
from harvester.errors import NetworkFailure
from harvester.models import MappingStatus, UrlMap
from harvester.rate_limit import ConcurrencyGovernor
from harvester.scraper import RenderedPage
from harvester.url_mapper import UrlMapper, collect_nav_links, match_links, select_targets

ROOT = "https://www.silveroak.com"

HOMEPAGE = f"""
<html><body>
  <header>
    <nav>
      <a href="/">Home</a>
      <a href="/our-wines/">Our Wines</a>
      <a href="/visit-us">Plan Your Visit</a>
      <a href="https://shop.partner.com/about">About Partner</a>
    </nav>
  </header>
  <main><a href="/press">Press</a></main>
</body></html>
"""


@pytest.fixture
async def client():
    async with httpx.AsyncClient() as c:
        yield c


@pytest.fixture
def fetcher():
    fetcher = MagicMock()
    fetcher.render_with_retry = AsyncMock(
        return_value=RenderedPage(url=ROOT, html=HOMEPAGE, status_code=200)
    )
    return fetcher


@pytest.fixture
def mapper(fetcher, client):
    return UrlMapper(fetcher, ConcurrencyGovernor(2, 0, 0), client, probe_timeout=1)


def test_nav_links_preferred():
    links = collect_nav_links(HOMEPAGE, ROOT)
    hrefs = [link.href for link in links]
    assert f"{ROOT}/our-wines/" in hrefs
    assert f"{ROOT}/press" not in hrefs


def test_fallback_to_short_same_origin_links():
    html = """
    <a href="/wines">Wines</a>
    <a href="https://elsewhere.com/tastings">Tastings</a>
    <a href="/story">This is a very long sentence that is certainly not a navigation label</a>
    """
    links = collect_nav_links(html, ROOT)
    assert [link.href for link in links] == [f"{ROOT}/wines"]


def test_match_skips_homepage_and_other_origins():
    links = collect_nav_links(HOMEPAGE, ROOT)
    matched = match_links(links, ROOT)
    assert matched[Category.OFFERINGS] == f"{ROOT}/our-wines/"
    assert matched[Category.EXPERIENCES] == f"{ROOT}/visit-us"
    assert matched[Category.PROFILE] is None


@respx.mock
async def test_unmatched_category_probed(mapper):
    respx.head(f"{ROOT}/about").mock(return_value=Response(404))
    respx.head(f"{ROOT}/story").mock(return_value=Response(200))
    respx.head(url__startswith=ROOT).mock(return_value=Response(404))

    urls = await mapper.map_target(make_target("silver-oak", website_url=ROOT))

    assert urls.status == MappingStatus.MAPPED
    assert urls.offerings_url == f"{ROOT}/our-wines/"
    assert urls.profile_url == f"{ROOT}/story"
    assert urls.website_url == ROOT


@respx.mock
async def test_probe_errors_are_skipped(mapper):
    respx.head(f"{ROOT}/wines").mock(side_effect=httpx.ConnectTimeout("slow"))
    respx.head(f"{ROOT}/shop").mock(return_value=Response(200))
    assert await mapper.probe(ROOT, Category.OFFERINGS) == f"{ROOT}/shop"


async def test_network_failure_needs_review(mapper, fetcher):
    fetcher.render_with_retry.side_effect = NetworkFailure("Timeout", ROOT)
    urls = await mapper.map_target(make_target("silver-oak", website_url=ROOT))
    assert urls == UrlMap(website_url=ROOT, status=MappingStatus.NEEDS_REVIEW)


async def test_no_root_url_needs_review_without_network(mapper, fetcher):
    urls = await mapper.map_target(make_target("silver-oak", website_url=None))
    assert urls.status == MappingStatus.NEEDS_REVIEW
    fetcher.render_with_retry.assert_not_awaited()


@respx.mock
async def test_nothing_found_needs_review(mapper, fetcher):
    fetcher.render_with_retry.return_value = RenderedPage(url=ROOT, html="<p>Welcome</p>")
    respx.head(url__startswith=ROOT).mock(return_value=Response(404))
    urls = await mapper.map_target(make_target("silver-oak", website_url=ROOT))
    assert urls.status == MappingStatus.NEEDS_REVIEW
    assert urls.offerings_url is None


def test_select_skips_already_mapped():
    targets = [make_target("a"), make_target("b"), make_target("c")]
    url_map = {
        "a": UrlMap(status=MappingStatus.MAPPED),
        "b": UrlMap(status=MappingStatus.NEEDS_REVIEW),
    }
    assert [t.slug for t in select_targets(targets, url_map)] == ["b", "c"]
    assert [t.slug for t in select_targets(targets, url_map, winery="a")] == ["a"]
    assert [t.slug for t in select_targets(targets, url_map, limit=1)] == ["b"]
