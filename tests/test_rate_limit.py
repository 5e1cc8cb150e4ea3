import asyncio
import time

import pytest

from harvester.rate_limit import ConcurrencyGovernor, origin_of


def test_origin_is_hostname():
    assert origin_of("https://www.opusonewinery.com/visit?x=1") == "www.opusonewinery.com"
    assert origin_of("http://WWW.Example.com:8080/a") == "www.example.com"


def test_max_delay_below_min_rejected():
    with pytest.raises(ValueError):
        ConcurrencyGovernor(1, 2.0, 1.0)


async def _request(governor, url, log, hold=0.01):
    async with governor.slot(url):
        start = time.monotonic()
        await asyncio.sleep(hold)
        log.append((url, start, time.monotonic()))


async def test_same_origin_spaced_by_min_delay():
    governor = ConcurrencyGovernor(5, 0.05, 0.06)
    log: list = []
    await asyncio.gather(*(_request(governor, "https://a.example.com/p", log) for _ in range(3)))

    log.sort(key=lambda row: row[1])
    for (_, _, prev_end), (_, next_start, _) in zip(log, log[1:]):
        assert next_start - prev_end >= 0.05 - 0.005


async def test_one_request_in_flight_per_origin():
    governor = ConcurrencyGovernor(5, 0, 0)
    log: list = []
    await asyncio.gather(*(_request(governor, "https://a.example.com/", log, 0.02) for _ in range(4)))

    log.sort(key=lambda row: row[1])
    for (_, _, prev_end), (_, next_start, _) in zip(log, log[1:]):
        assert next_start >= prev_end


async def test_different_origins_run_in_parallel():
    governor = ConcurrencyGovernor(5, 1.0, 1.0)
    log: list = []
    started = time.monotonic()
    await asyncio.gather(
        *(_request(governor, f"https://site{i}.example.com/", log, 0.05) for i in range(4))
    )
    # First request per origin has no previous completion to wait for
    assert time.monotonic() - started < 0.5


async def test_global_bound_caps_concurrency():
    governor = ConcurrencyGovernor(2, 0, 0)
    active = 0
    peak = 0

    async def work(i):
        nonlocal active, peak
        async with governor.slot(f"https://site{i}.example.com/"):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

    await asyncio.gather(*(work(i) for i in range(6)))
    assert peak == 2


async def test_slot_released_on_error():
    governor = ConcurrencyGovernor(1, 0, 0)
    with pytest.raises(RuntimeError):
        async with governor.slot("https://a.example.com/"):
            raise RuntimeError("boom")

    await asyncio.wait_for(_request(governor, "https://a.example.com/", []), timeout=1)
