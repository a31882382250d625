"""
Tests for stats normalization, formatting and CLI output parsing.
"""

import json

import pytest

from vncp_console.models import StatsSnapshot
from vncp_console.stats import (
    format_bytes,
    format_cpu,
    iter_stream_samples,
    memory_display,
    normalize_stats,
    parse_cli_stats,
)


def make_sample(
    total=200, pre_total=100, system=1000, pre_system=900, online=1,
    usage=None, stats=None, limit=None,
):
    memory = {"stats": stats or {}}
    if usage is not None:
        memory["usage"] = usage
    if limit is not None:
        memory["limit"] = limit
    cpu = {"cpu_usage": {"total_usage": total}, "system_cpu_usage": system}
    if online is not None:
        cpu["online_cpus"] = online
    return {
        "cpu_stats": cpu,
        "precpu_stats": {"cpu_usage": {"total_usage": pre_total}, "system_cpu_usage": pre_system},
        "memory_stats": memory,
    }


class TestFormatBytes:
    @pytest.mark.parametrize("value,expected", [
        (0, "0 B"),
        (-5, "0 B"),
        (float("nan"), "0 B"),
        (float("inf"), "0 B"),
        (512, "512 B"),
        (5, "5.00 B"),
        (1536, "1.50 KiB"),
        (10485760, "10.0 MiB"),
        (104857600, "100 MiB"),
        (3 * 1024 ** 3, "3.00 GiB"),
    ])
    def test_format(self, value, expected):
        assert format_bytes(value) == expected

    def test_non_numeric(self):
        assert format_bytes(None) == "0 B"
        assert format_bytes("12") == "0 B"


class TestNormalizeStats:
    def test_cpu_percent_single_cpu_full_load(self):
        snapshot = normalize_stats(make_sample(total=200, pre_total=100, system=200, pre_system=100))
        assert snapshot.cpu_percent == pytest.approx(100.0)
        assert format_cpu(snapshot.cpu_percent) == "100.00%"

    def test_cpu_percent_scales_with_online_cpus(self):
        snapshot = normalize_stats(make_sample(total=150, pre_total=100, system=200, pre_system=100, online=4))
        assert snapshot.cpu_percent == pytest.approx(200.0)

    def test_cpu_percent_zero_when_system_delta_not_positive(self):
        snapshot = normalize_stats(make_sample(system=100, pre_system=100))
        assert snapshot.cpu_percent == 0.0
        snapshot = normalize_stats(make_sample(system=90, pre_system=100))
        assert snapshot.cpu_percent == 0.0

    def test_online_cpus_falls_back_to_percpu_length(self):
        sample = make_sample(total=150, pre_total=100, system=200, pre_system=100, online=None)
        sample["cpu_stats"]["cpu_usage"]["percpu_usage"] = [1, 2]
        assert normalize_stats(sample).online_cpu_count == 2
        assert normalize_stats(sample).cpu_percent == pytest.approx(100.0)

    def test_online_cpus_defaults_to_one(self):
        sample = make_sample(online=None)
        assert normalize_stats(sample).online_cpu_count == 1

    def test_reported_zero_online_cpus_is_kept(self):
        sample = make_sample(total=150, pre_total=100, system=200, pre_system=100, online=0)
        sample["cpu_stats"]["cpu_usage"]["percpu_usage"] = [1, 2]
        snapshot = normalize_stats(sample)
        assert snapshot.online_cpu_count == 0
        assert snapshot.cpu_percent == 0.0

    def test_cgroup_v1_cache(self):
        snapshot = normalize_stats(make_sample(usage=1000, stats={"cache": 300}, limit=4000))
        assert snapshot.memory_usage == 700
        assert snapshot.memory_limit == 4000

    def test_cgroup_v2_inactive_file(self):
        snapshot = normalize_stats(make_sample(usage=1000, stats={"inactive_file": 400}))
        assert snapshot.memory_usage == 600

    def test_total_inactive_file_fallback(self):
        snapshot = normalize_stats(make_sample(usage=1000, stats={"total_inactive_file": 100}))
        assert snapshot.memory_usage == 900

    def test_usage_in_bytes_and_max_usage_fallbacks(self):
        sample = make_sample()
        sample["memory_stats"] = {"usage_in_bytes": 2048, "max_usage": 8192, "stats": {}}
        snapshot = normalize_stats(sample)
        assert snapshot.memory_usage_raw == 2048
        assert snapshot.memory_limit == 8192

    def test_memory_never_negative(self):
        snapshot = normalize_stats(make_sample(usage=100, stats={"cache": 500}))
        assert snapshot.memory_usage == 0

    @pytest.mark.parametrize("sample", [{}, None, "junk", {"cpu_stats": "x", "memory_stats": [1]}])
    def test_malformed_sample_gives_zeroes(self, sample):
        snapshot = normalize_stats(sample)
        assert snapshot.cpu_percent == 0.0
        assert snapshot.memory_usage == 0.0
        assert snapshot.memory_limit == 0.0


class TestMemoryDisplay:
    def test_with_limit(self):
        snapshot = StatsSnapshot(memory_usage_raw=10485760, memory_limit=104857600)
        assert memory_display(snapshot) == "10.0 MiB / 100 MiB"

    def test_without_limit(self):
        snapshot = StatsSnapshot(memory_usage_raw=1536)
        assert memory_display(snapshot) == "1.50 KiB"


class TestIterStreamSamples:
    def test_dict_chunk(self):
        assert list(iter_stream_samples({"a": 1})) == [{"a": 1}]

    def test_multiline_text_skips_malformed_line(self):
        chunk = "\n".join([json.dumps({"n": 1}), "{broken", "", json.dumps({"n": 2})])
        assert list(iter_stream_samples(chunk)) == [{"n": 1}, {"n": 2}]

    def test_bytes_chunk(self):
        chunk = (json.dumps({"n": 1}) + "\n").encode("utf-8")
        assert list(iter_stream_samples(chunk)) == [{"n": 1}]

    def test_non_object_lines_ignored(self):
        assert list(iter_stream_samples("[1, 2]\n3\n")) == []

    def test_none_and_other_types(self):
        assert list(iter_stream_samples(None)) == []
        assert list(iter_stream_samples(42)) == []


class TestParseCliStats:
    def test_typical_output(self):
        assert parse_cli_stats("0.52%|12.3MiB / 1.944GiB\n") == (0.52, "12.3MiB / 1.944GiB")

    def test_bytes_output(self):
        assert parse_cli_stats(b"12.00%|1MiB / 2MiB") == (12.0, "1MiB / 2MiB")

    def test_unparseable_cpu_becomes_zero(self):
        assert parse_cli_stats("--|0B / 0B") == (0.0, "0B / 0B")

    def test_missing_memory_field(self):
        assert parse_cli_stats("3.5%") == (3.5, "")

    @pytest.mark.parametrize("output", [None, "", "   \n", "|"])
    def test_empty_output(self, output):
        assert parse_cli_stats(output) is None
