"""
Tests for the Cache Policy Engine.
"""

import pytest

from recipestream.services.cache_policy import CachePolicy, ObjectKind, cache_control, policy_for


class TestPolicyFor:
    def test_manifest_defaults(self):
        policy = policy_for(ObjectKind.MANIFEST)

        assert policy == CachePolicy(ttl=300, cacheable_by="public", access_ttl=600)
        assert policy.header() == "public, max-age=300"
        assert policy.issuable is True

    def test_segment_defaults(self):
        policy = policy_for(ObjectKind.SEGMENT)

        assert policy.ttl == 86400
        assert policy.access_ttl == 1800
        assert policy.immutable is True
        assert policy.header() == "public, max-age=86400, immutable"

    def test_source_is_private_and_never_issued(self):
        policy = policy_for(ObjectKind.SOURCE)

        assert policy.cacheable_by == "private"
        assert policy.issuable is False
        assert policy.header() == "private, no-store"

    def test_segments_cached_longer_than_manifests(self):
        assert policy_for(ObjectKind.SEGMENT).ttl > policy_for(ObjectKind.MANIFEST).ttl

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError, match="Unknown object kind"):
            policy_for("thumbnail")  # type: ignore[arg-type]

    def test_evaluation_is_deterministic(self):
        assert policy_for(ObjectKind.SEGMENT) == policy_for(ObjectKind.SEGMENT)


class TestConfiguredLifetimes:
    def test_env_overrides_cache_ttl(self, monkeypatch):
        monkeypatch.setenv("MANIFEST_CACHE_TTL_SECONDS", "60")

        assert cache_control(ObjectKind.MANIFEST) == "public, max-age=60"

    def test_zero_ttl_is_not_cacheable(self, monkeypatch):
        monkeypatch.setenv("MANIFEST_CACHE_TTL_SECONDS", "0")

        assert cache_control(ObjectKind.MANIFEST) == "private, no-store"

    def test_env_overrides_access_ttl(self, monkeypatch):
        monkeypatch.setenv("SEGMENT_ACCESS_TTL_SECONDS", "120")

        assert policy_for(ObjectKind.SEGMENT).access_ttl == 120

    def test_invalid_value_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("SEGMENT_CACHE_TTL_SECONDS", "one-day")

        assert policy_for(ObjectKind.SEGMENT).ttl == 86400
