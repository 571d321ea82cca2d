from datetime import datetime, timedelta

from levelup.service.runtime import check_rate_limit, get_runtime


async def test_bucket_allows_limit_then_refuses():
    runtime = get_runtime()
    assert runtime.cache is None

    results = [await check_rate_limit(runtime, "login:lifter", 2, 60) for _ in range(3)]

    assert results == [True, True, False]


async def test_non_positive_limit_disables_check():
    runtime = get_runtime()
    for _ in range(5):
        assert await check_rate_limit(runtime, "login:lifter", 0, 60) is True
    assert runtime._local_rate_limits == {}


async def test_drained_bucket_is_kept():
    runtime = get_runtime()
    await check_rate_limit(runtime, "login:lifter", 1, 60)
    await check_rate_limit(runtime, "login:other", 1, 60)

    assert "login:lifter" in runtime._local_rate_limits
    assert await check_rate_limit(runtime, "login:lifter", 1, 60) is False


async def test_refilled_buckets_evicted_when_map_is_touched():
    runtime = get_runtime()
    for index in range(50):
        await check_rate_limit(runtime, f"register:user{index}@example.com", 3, 60)
    assert len(runtime._local_rate_limits) == 50

    # age every bucket past the moment it would be full again
    past = datetime.utcnow() - timedelta(seconds=1)
    for key, (tokens, last_ts, _) in list(runtime._local_rate_limits.items()):
        runtime._local_rate_limits[key] = (tokens, last_ts - timedelta(minutes=5), past)

    assert await check_rate_limit(runtime, "login:lifter", 3, 60) is True

    assert list(runtime._local_rate_limits) == ["login:lifter"]


async def test_evicted_key_starts_with_a_full_bucket():
    runtime = get_runtime()
    assert await check_rate_limit(runtime, "resend:lifter@example.com", 1, 60) is True
    tokens, last_ts, _ = runtime._local_rate_limits["resend:lifter@example.com"]
    runtime._local_rate_limits["resend:lifter@example.com"] = (
        tokens,
        last_ts - timedelta(minutes=2),
        datetime.utcnow() - timedelta(seconds=1),
    )

    assert await check_rate_limit(runtime, "resend:lifter@example.com", 1, 60) is True
    assert await check_rate_limit(runtime, "resend:lifter@example.com", 1, 60) is False
