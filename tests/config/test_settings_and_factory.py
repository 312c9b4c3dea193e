from __future__ import annotations

import asyncio

import pytest

from revalidate import (
    CacheSettings,
    ConfigurationError,
    NoOpCacheMetrics,
    RevalidateOptions,
    RevalidatingCacheClient,
    create_cache_client_from_env,
    create_metrics,
)


def test_settings_defaults_match_option_defaults(monkeypatch):
    for name in (
        "REVALIDATE_COALESCE_TIMEOUT_S",
        "REVALIDATE_DEDUPING_INTERVAL_S",
        "REVALIDATE_ERROR_RETRY_COUNT",
        "REVALIDATE_METRICS_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = CacheSettings.from_env()
    assert settings.coalesce_timeout_s == 30.0
    assert settings.to_options() == RevalidateOptions()
    assert settings.to_coalescing_policy().enabled is True
    assert settings.metrics_backend == "none"


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("REVALIDATE_COALESCE_TIMEOUT_S", "12.5")
    monkeypatch.setenv("REVALIDATE_COALESCE_ENABLED", "off")
    monkeypatch.setenv("REVALIDATE_DEDUPING_INTERVAL_S", "10")
    monkeypatch.setenv("REVALIDATE_REFRESH_INTERVAL_S", "30")
    monkeypatch.setenv("REVALIDATE_ERROR_RETRY_COUNT", "2")
    monkeypatch.setenv("REVALIDATE_ERROR_RETRY_INTERVAL_S", "2")
    monkeypatch.setenv("REVALIDATE_REVALIDATE_ON_FOCUS", "false")
    monkeypatch.setenv("REVALIDATE_REVALIDATE_IF_STALE", "0")
    monkeypatch.setenv("REVALIDATE_KEEP_PREVIOUS_DATA", "yes")

    settings = CacheSettings.from_env()
    policy = settings.to_coalescing_policy()
    assert policy.timeout_s == 12.5
    assert policy.enabled is False

    options = settings.to_options()
    assert options.deduping_interval_s == 10.0
    assert options.refresh_interval_s == 30.0
    assert options.error_retry_count == 2
    assert options.error_retry_interval_s == 2.0
    assert options.revalidate_on_focus is False
    assert options.revalidate_on_reconnect is True
    assert options.revalidate_if_stale is False
    assert options.keep_previous_data is True


def test_options_reject_invalid_values():
    with pytest.raises(ConfigurationError, match="error_retry_count"):
        RevalidateOptions(error_retry_count=-1)
    with pytest.raises(ConfigurationError, match="refresh_interval_s"):
        RevalidateOptions(refresh_interval_s=-5)
    with pytest.raises(ValueError, match="error_retry_backoff"):
        RevalidateOptions(error_retry_backoff=0.5)

    merged = RevalidateOptions().merged(refresh_interval_s=15.0)
    assert merged.refresh_interval_s == 15.0
    assert merged.deduping_interval_s == 2.0


def test_factory_builds_client_from_environment(monkeypatch):
    monkeypatch.setenv("REVALIDATE_COALESCE_TIMEOUT_S", "5")
    monkeypatch.setenv("REVALIDATE_DEDUPING_INTERVAL_S", "10")
    monkeypatch.delenv("REVALIDATE_METRICS_BACKEND", raising=False)

    client = create_cache_client_from_env()
    assert isinstance(client, RevalidatingCacheClient)
    assert client.coalescer.policy.timeout_s == 5.0
    assert client.defaults.deduping_interval_s == 10.0

    asyncio.run(client.close())


def test_factory_unknown_metrics_backend_raises(monkeypatch):
    monkeypatch.setenv("REVALIDATE_METRICS_BACKEND", "statsd")
    with pytest.raises(ValueError, match="Unknown REVALIDATE_METRICS_BACKEND"):
        create_cache_client_from_env()


def test_create_metrics_defaults_to_noop():
    assert isinstance(create_metrics(CacheSettings()), NoOpCacheMetrics)


def test_prometheus_metrics_count_coalescer_activity():
    prometheus_client = pytest.importorskip("prometheus_client")
    from revalidate import PrometheusCacheMetrics, RequestCoalescer

    registry = prometheus_client.CollectorRegistry()
    metrics = PrometheusCacheMetrics(namespace="tests", registry=registry)

    async def scenario() -> None:
        coalescer = RequestCoalescer(metrics=metrics)

        async def op():
            await asyncio.sleep(0.01)
            return "ok"

        await asyncio.gather(*(coalescer.run("k", op) for _ in range(3)))

    asyncio.run(scenario())

    assert registry.get_sample_value("tests_coalescer_initiated_total") == 1.0
    assert registry.get_sample_value("tests_coalescer_coalesced_total") == 2.0

    metrics.incr("cache_fetch_total", tags={"outcome": "success", "reason": "initial"})
    assert (
        registry.get_sample_value(
            "tests_cache_fetch_total", {"outcome": "success", "reason": "initial"}
        )
        == 1.0
    )


def test_prometheus_metrics_reject_inconsistent_usage():
    prometheus_client = pytest.importorskip("prometheus_client")
    from revalidate import PrometheusCacheMetrics

    registry = prometheus_client.CollectorRegistry()
    metrics = PrometheusCacheMetrics(namespace="tests", registry=registry)

    metrics.incr("cache_fetch_total", 2, tags={"reason": "focus", "outcome": "success"})
    assert (
        registry.get_sample_value(
            "tests_cache_fetch_total", {"outcome": "success", "reason": "focus"}
        )
        == 2.0
    )

    with pytest.raises(ValueError, match="uses labels"):
        metrics.incr("cache_fetch_total", tags={"outcome": "success"})
    with pytest.raises(ValueError, match="Invalid metric name"):
        metrics.incr("cache-fetch")
    with pytest.raises(ValueError, match="cannot be decremented"):
        metrics.incr("cache_fetch_deduped_total", -1)
