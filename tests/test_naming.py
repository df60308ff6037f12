"""Tests for deterministic worker, site and artifact naming."""

import itertools

import pytest

from renderfleet.exceptions import InvalidConfigError
from renderfleet.schemas.worker import WorkerConfig
from renderfleet.services.naming import (
    bucket_name,
    chunk_output_key,
    cpu_token,
    derive_name,
    final_output_key,
    is_family_name,
    memory_token,
    parse_name,
    validate_site_name,
)


def _config(**overrides) -> WorkerConfig:
    fields = {"version": "3.3.96", "memory": "2Gi", "cpu": "1", "timeout_seconds": 1900, "family": "remotion"}
    fields.update(overrides)
    return WorkerConfig(**fields)


class TestDeriveName:
    """Tests for the worker name contract."""

    def test_reference_name(self):
        assert derive_name(_config()) == "remotion--3-3-96--mem2gi--cpu1-0--t-1900"

    def test_timeout_and_cpu_change(self):
        name = derive_name(_config(timeout_seconds=300, cpu="2"))
        assert name == "remotion--3-3-96--mem2gi--cpu2-0--t-300"

    def test_same_config_same_name(self):
        assert derive_name(_config()) == derive_name(_config())

    def test_equivalent_cpu_spellings_normalise(self):
        assert derive_name(_config(cpu=1)) == derive_name(_config(cpu="1.0"))
        assert derive_name(_config(cpu=2.5)) == derive_name(_config(cpu="2.50"))

    def test_family_override(self):
        assert derive_name(_config(family=None), family="custom").startswith("custom--")

    def test_mapping_input(self):
        config = {"version": "4.0.0", "memory": "512Mi", "cpu": 0.5, "timeout_seconds": 60, "family": "remotion"}
        assert derive_name(config) == "remotion--4-0-0--mem512mi--cpu0-5--t-60"

    def test_distinct_configs_never_collide(self):
        versions = ["3.3.96", "3.3.9", "33.96", "3.39.6"]
        memories = ["512Mi", "2Gi", "2048Mi"]
        cpus = ["0.5", "1", "2", "1.5"]
        timeouts = [1, 30, 300, 3600]
        names = set()
        combos = list(itertools.product(versions, memories, cpus, timeouts))
        for version, memory, cpu, timeout in combos:
            names.add(derive_name(_config(version=version, memory=memory, cpu=cpu, timeout_seconds=timeout)))
        assert len(names) == len(combos)

    @pytest.mark.parametrize("field", ["version", "memory", "cpu", "timeout_seconds"])
    def test_missing_field(self, field):
        with pytest.raises(InvalidConfigError) as exc_info:
            derive_name(_config(**{field: None}))
        assert exc_info.value.location.field == field

    @pytest.mark.parametrize("timeout", [0, -5, 3601])
    def test_timeout_out_of_range(self, timeout):
        with pytest.raises(InvalidConfigError):
            derive_name(_config(timeout_seconds=timeout))

    @pytest.mark.parametrize("version", ["3.3", "v4", "4--0", "4.0.0-beta"])
    def test_version_domain(self, version):
        if version == "3.3":
            assert derive_name(_config(version=version)).startswith("remotion--3-3--")
        else:
            with pytest.raises(InvalidConfigError):
                derive_name(_config(version=version))

    @pytest.mark.parametrize("cpu", [0, -1, "abc", 9, True])
    def test_cpu_domain(self, cpu):
        with pytest.raises(InvalidConfigError):
            cpu_token(cpu)

    @pytest.mark.parametrize("memory", ["2GB", "0Gi", "2 Gi", ""])
    def test_memory_domain(self, memory):
        with pytest.raises(InvalidConfigError):
            memory_token(memory)


class TestParseName:
    """Tests for recognising worker names."""

    def test_parse_round_trips_tokens(self):
        parsed = parse_name("remotion--3-3-96--mem2gi--cpu1-0--t-1900")
        assert parsed == {
            "family": "remotion",
            "version": "3-3-96",
            "memory": "2gi",
            "cpu": "1-0",
            "timeout": "1900",
        }

    def test_foreign_service_is_not_a_worker(self):
        assert parse_name("my-api-service") is None
        assert not is_family_name("my-api-service", "remotion")

    def test_family_filter(self):
        name = derive_name(_config())
        assert is_family_name(name, "remotion")
        assert not is_family_name(name, "other")


class TestArtifactNames:
    """Tests for site and render artifact keys."""

    def test_chunk_key_is_deterministic(self):
        kwargs = dict(chunk_index=3, start_ms=60000, end_ms=80000, site_ref="https://x/index.html", composition="Main")
        assert chunk_output_key("job1", **kwargs) == chunk_output_key("job1", **kwargs)

    def test_chunk_key_differs_per_input(self):
        base = dict(chunk_index=3, start_ms=60000, end_ms=80000, site_ref="s", composition="Main")
        key = chunk_output_key("job1", **base)
        assert key != chunk_output_key("job2", **base)
        assert key != chunk_output_key("job1", **{**base, "input_props": {"title": "x"}})
        assert key.startswith("renders/job1/chunks/00003-")
        assert key.endswith(".mp4")

    def test_final_output_key(self):
        assert final_output_key("job1", "webm") == "renders/job1/out.webm"

    def test_bucket_name(self):
        assert bucket_name("renderfleet-", "us-east1", "abc") == "renderfleet-us-east1-abc"

    def test_site_name_validation(self):
        assert validate_site_name("my-site_1") == "my-site_1"
        with pytest.raises(InvalidConfigError):
            validate_site_name("bad/site")
