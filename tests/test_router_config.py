"""Tests for configuration loading, provider records and secrets."""

import json

import pytest

from prime_router.core.router_config import (
    ConfigManager,
    ProviderRegistry,
    RouterConfig,
    SecretResolver,
    load_config,
    parse_provider,
    parse_providers,
)
from prime_router.core.router_errors import ConfigError
from prime_router.core.router_models import ProviderKind


PROVIDERS_YAML = """
quality:
  scorer: length
  min_score: 0.6
  escalation_cap: 3
monitor:
  failure_threshold: 4
providers:
  - id: local-llama
    kind: local
    endpoint: http://127.0.0.1:8080/v1/chat/completions
    priority: 10
    capabilities: [chat, code]
  - id: claude
    kind: cloud
    endpoint: https://api.anthropic.com/v1/messages
    adapter: anthropic
    model: claude-test
    credentials_ref: env:ANTHROPIC_API_KEY
    max_context_tokens: 200000
    rpm_limit: 50
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "prime_router.yaml"
    path.write_text(PROVIDERS_YAML)
    return path


class TestProviderRecords:
    """Declarative provider parsing."""

    def test_parse_record(self):
        descriptor = parse_provider({
            "id": "local-llama",
            "kind": "LOCAL",
            "capabilities": ["code"],
            "max_context_tokens": 4096,
        })

        assert descriptor.provider_id == "local-llama"
        assert descriptor.kind == ProviderKind.LOCAL
        assert descriptor.capabilities == frozenset({"code"})
        assert descriptor.adapter == "openai"

    @pytest.mark.parametrize("key", ["api_key", "token", "password"])
    def test_literal_secrets_rejected(self, key):
        """Records may only reference credentials, never contain them."""
        with pytest.raises(ConfigError, match="credentials_ref"):
            parse_provider({"id": "cloud", "kind": "cloud", key: "sk-live-123"})

    def test_bad_credentials_ref(self):
        with pytest.raises(ConfigError):
            parse_provider({"id": "cloud", "kind": "cloud", "credentials_ref": "sk-live-123"})

    def test_bad_kind(self):
        with pytest.raises(ConfigError, match="kind"):
            parse_provider({"id": "edge", "kind": "edge"})

    def test_missing_id(self):
        with pytest.raises(ConfigError):
            parse_provider({"kind": "local"})

    def test_non_positive_context(self):
        with pytest.raises(ConfigError):
            parse_provider({"id": "tiny", "kind": "local", "max_context_tokens": 0})

    def test_unknown_keys_ignored(self):
        descriptor = parse_provider({"id": "local", "kind": "local", "gpu_layers": 33})
        assert descriptor.provider_id == "local"

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ConfigError, match="Duplicate"):
            parse_providers([
                {"id": "a", "kind": "local"},
                {"id": "a", "kind": "cloud"},
            ])

    def test_quoted_numbers_converted(self):
        """Numbers written as strings become numbers on the descriptor."""
        descriptor = parse_provider({
            "id": "cloud",
            "kind": "cloud",
            "priority": "10",
            "max_context_tokens": "4096",
            "rpm_limit": "50",
            "timeout_seconds": "12.5",
            "cost_per_1k_tokens": 0,
            "enabled": "yes",
            "capabilities": "chat, code",
        })

        assert descriptor.priority == 10
        assert descriptor.max_context_tokens == 4096
        assert descriptor.rpm_limit == 50
        assert descriptor.timeout_seconds == pytest.approx(12.5)
        assert isinstance(descriptor.cost_per_1k_tokens, float)
        assert descriptor.enabled is True
        assert descriptor.capabilities == frozenset({"chat", "code"})

    @pytest.mark.parametrize("key,value", [
        ("priority", "high"),
        ("priority", True),
        ("max_context_tokens", 1.5),
        ("tpm_limit", [100]),
        ("timeout_seconds", "soon"),
        ("enabled", "maybe"),
        ("endpoint", 8080),
        ("capabilities", 3),
    ])
    def test_mistyped_fields_rejected(self, key, value):
        with pytest.raises(ConfigError, match=key):
            parse_provider({"id": "cloud", "kind": "cloud", key: value})

    def test_non_positive_quota_rejected(self):
        with pytest.raises(ConfigError, match="rpm_limit"):
            parse_provider({"id": "cloud", "kind": "cloud", "rpm_limit": 0})

    def test_null_fields_take_defaults(self):
        descriptor = parse_provider({"id": "local", "kind": "local", "priority": None, "rpm_limit": None})

        assert descriptor.priority == 100
        assert descriptor.rpm_limit is None

    def test_non_mapping_record(self):
        with pytest.raises(ConfigError, match="mapping"):
            parse_provider(["local"])


class TestProviderRegistry:
    """Atomic provider set replacement."""

    def test_publish_replaces_snapshot(self):
        """Old snapshots are untouched by a publish."""
        registry = ProviderRegistry(parse_providers([{"id": "a", "kind": "local"}]))
        before = registry.snapshot()

        after = registry.publish(parse_providers([{"id": "b", "kind": "cloud"}]))

        assert before.provider_ids == ["a"]
        assert after.provider_ids == ["b"]
        assert after.version == before.version + 1
        assert registry.snapshot() is after

    def test_publish_notifies_listeners(self):
        registry = ProviderRegistry()
        seen = []
        registry.on_publish(seen.append)

        registry.publish(parse_providers([{"id": "a", "kind": "local"}]))

        assert len(seen) == 1
        assert seen[0].version == 2

    def test_listener_errors_do_not_block_publish(self):
        registry = ProviderRegistry()

        @registry.on_publish
        def broken(provider_set):
            raise RuntimeError("listener bug")

        published = registry.publish([])
        assert registry.snapshot() is published


class TestSecretResolver:
    """Credential reference resolution."""

    def test_env_reference(self, monkeypatch):
        monkeypatch.setenv("PRIME_TEST_SECRET", "s3cret")
        assert SecretResolver().resolve("env:PRIME_TEST_SECRET") == "s3cret"

    def test_file_reference(self, tmp_path):
        secret = tmp_path / "anthropic"
        secret.write_text("file-secret\n")
        assert SecretResolver().resolve(f"file:{secret}") == "file-secret"

    def test_no_reference(self):
        assert SecretResolver().resolve(None) is None

    def test_unknown_scheme(self):
        with pytest.raises(ConfigError, match="scheme"):
            SecretResolver().resolve("vault:secret/data/x")

    def test_unresolvable_reference(self, monkeypatch):
        monkeypatch.delenv("PRIME_TEST_MISSING", raising=False)
        with pytest.raises(ConfigError):
            SecretResolver().resolve("env:PRIME_TEST_MISSING")

    def test_custom_scheme(self):
        resolver = SecretResolver()
        resolver.register("static", lambda target: target.upper())
        assert resolver.resolve("static:abc") == "ABC"


class TestConfigManager:
    """File, override and environment layering."""

    def test_load_yaml(self, config_file):
        manager = load_config(config_file)
        config = manager.config

        assert config.quality.scorer == "length"
        assert config.quality.escalation_cap == 3
        assert config.monitor.failure_threshold == 4
        assert [p.provider_id for p in config.providers] == ["local-llama", "claude"]
        assert manager.registry.snapshot().provider_ids == ["local-llama", "claude"]

    def test_load_json(self, tmp_path):
        path = tmp_path / "router.json"
        path.write_text(json.dumps({"routing": {"max_fallback_chain": 1}}))

        assert load_config(path).config.routing.max_fallback_chain == 1

    def test_env_overrides_file(self, config_file, monkeypatch):
        """PRIME_ROUTER_<SECTION>_<KEY> beats the file."""
        monkeypatch.setenv("PRIME_ROUTER_QUALITY_MIN_SCORE", "0.9")
        monkeypatch.setenv("PRIME_ROUTER_ROUTING_RANKING_POLICY", "priority")

        config = load_config(config_file).config

        assert config.quality.min_score == pytest.approx(0.9)
        assert config.routing.ranking_policy == "priority"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("providers: [unclosed\n")

        with pytest.raises(ConfigError):
            load_config(path)

    def test_mistyped_section_value(self, tmp_path):
        """A value that cannot become the field's type names the key."""
        path = tmp_path / "router.yaml"
        path.write_text("monitor:\n  failure_threshold: three\n")

        with pytest.raises(ConfigError, match="monitor.failure_threshold"):
            load_config(path)

    @pytest.mark.parametrize("body", [
        "quality: strict\n",
        "routing: [weighted]\n",
        "classifier:\n  complex_domains: 5\n",
        "telemetry:\n  enabled: sometimes\n",
        "quality:\n  min_score: [0.5]\n",
    ])
    def test_malformed_sections_rejected(self, tmp_path, body):
        path = tmp_path / "router.yaml"
        path.write_text(body)

        with pytest.raises(ConfigError):
            load_config(path)

    def test_quoted_section_values_converted(self, tmp_path):
        path = tmp_path / "router.yaml"
        path.write_text("monitor:\n  failure_threshold: '4'\nquality:\n  min_score: '0.7'\n  scorer: ~\n")

        config = load_config(path).config

        assert config.monitor.failure_threshold == 4
        assert config.quality.min_score == pytest.approx(0.7)
        assert config.quality.scorer == "composite"

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "router.yaml"
        path.mkdir()

        with pytest.raises(ConfigError, match="Failed to read"):
            load_config(path)

    def test_out_of_range_values_clamped(self, tmp_path):
        path = tmp_path / "router.yaml"
        path.write_text("quality:\n  min_score: 1.5\n  escalation_cap: -1\nmonitor:\n  failure_threshold: 0\n")

        config = load_config(path).config

        assert config.quality.min_score == 1.0
        assert config.quality.escalation_cap == 0
        assert config.monitor.failure_threshold == 1

    def test_set_and_get(self, config_file):
        manager = load_config(config_file)
        manager.set("quality.min_score", "0.75")

        assert manager.get("quality.min_score") == pytest.approx(0.75)
        assert manager.get("quality.unknown", "fallback") == "fallback"

        with pytest.raises(ValueError):
            manager.set("nonsense.key", 1)

    def test_overrides_survive_reload(self, config_file):
        manager = load_config(config_file)
        manager.set("routing.max_fallback_chain", 1)

        manager.load_sync()
        assert manager.config.routing.max_fallback_chain == 1

    def test_round_trip_dict(self, config_file):
        """to_dict output loads back into an equal configuration."""
        config = load_config(config_file).config
        assert RouterConfig.from_dict(config.to_dict()).to_dict() == config.to_dict()


class TestHotReload:
    """Reload semantics."""

    async def test_reload_publishes_new_set(self, config_file):
        registry = ProviderRegistry()
        manager = ConfigManager([config_file], registry=registry)
        await manager.load()
        first = registry.snapshot()

        config_file.write_text("providers:\n  - id: only-local\n    kind: local\n")
        await manager.reload()

        assert registry.snapshot().provider_ids == ["only-local"]
        assert first.provider_ids == ["local-llama", "claude"]

    async def test_invalid_reload_keeps_previous(self, config_file):
        """A bad file is rejected and the active configuration stays."""
        manager = ConfigManager([config_file])
        await manager.load()
        version = manager.registry.version

        config_file.write_text("providers:\n  - id: leaky\n    kind: cloud\n    api_key: sk-123\n")
        config = await manager.reload()

        assert config.quality.scorer == "length"
        assert manager.registry.version == version
        assert len(manager.registry.snapshot()) == 2

    async def test_mistyped_reload_keeps_previous(self, config_file):
        """A reload whose values have the wrong type leaves everything as it was."""
        manager = ConfigManager([config_file])
        await manager.load()
        version = manager.registry.version

        config_file.write_text(PROVIDERS_YAML.replace("failure_threshold: 4", "failure_threshold: three"))
        config = await manager.reload()

        assert config.monitor.failure_threshold == 4
        assert manager.config is config
        assert manager.registry.version == version

        config_file.write_text(PROVIDERS_YAML.replace("priority: 10", "priority: first"))
        await manager.reload()

        assert manager.registry.version == version
        assert manager.registry.snapshot().get("local-llama").priority == 10

    async def test_change_callbacks(self, config_file):
        manager = ConfigManager([config_file])
        await manager.load()

        quality_changes = []
        routing_changes = []
        manager.on_change("quality")(quality_changes.append)
        manager.on_change("routing")(routing_changes.append)

        config_file.write_text(PROVIDERS_YAML.replace("min_score: 0.6", "min_score: 0.8"))
        await manager.reload()

        assert len(quality_changes) == 1
        assert quality_changes[0].min_score == pytest.approx(0.8)
        assert routing_changes == []

    async def test_files_changed(self, config_file):
        manager = ConfigManager([config_file])
        await manager.load()
        assert manager.files_changed() is False

        config_file.unlink()
        assert manager.files_changed() is True

    async def test_auto_reload_watcher_shutdown(self, config_file):
        manager = ConfigManager([config_file], auto_reload=True, poll_interval=0.01)
        await manager.load()

        await manager.shutdown()
        assert manager._watch_task is None
