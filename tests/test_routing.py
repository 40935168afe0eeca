"""
Tests for Platform Selection
============================

Run with: pytest tests/ -v
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ai_gateway.classifier import TaskClassifier
from ai_gateway.config import FeatureFlags
from ai_gateway.errors import NoAvailableProvider, UnknownPlatformError
from ai_gateway.models import RequestOptions, TaskType
from ai_gateway.routing import ERROR_FALLBACK_SELECTION, PLATFORM_PRIORITY_TABLE, PlatformSelector
from tests.fakes import PLATFORMS, make_registry


@pytest.fixture
def selector():
    return PlatformSelector(make_registry(), features=FeatureFlags(enable_local_models=True))


class TestPriorityTable:
    """Test the static task -> platform table"""

    def test_every_task_has_a_triple(self):
        """All task types route somewhere registered"""
        for task_type in TaskType:
            triple = PLATFORM_PRIORITY_TABLE[task_type]
            assert set(triple) == {"primary", "secondary", "fallback"}
            assert all(name in PLATFORMS for name in triple.values())

    def test_config_override(self):
        """taskRouting overrides replace individual slots"""
        selector = PlatformSelector(
            make_registry(), task_routing={"code": {"primary": "deepseek"}, "bogus": {}}
        )
        triple = selector.triple(TaskType.CODE)
        assert triple["primary"] == "deepseek"
        assert triple["secondary"] == "deepseek"
        assert PLATFORM_PRIORITY_TABLE[TaskType.CODE]["primary"] == "copilot"


class TestSelect:
    """Test select()"""

    def test_primary_by_default(self, selector):
        """The task's primary platform is chosen"""
        selection = selector.select(TaskType.RESEARCH)
        assert selection.platform == "perplexity"
        assert selection.secondary == "gemini"
        assert selection.fallback == "local"

    def test_user_override(self, selector):
        """A registered override is marked user-preferred"""
        selection = selector.select(TaskType.CODE, RequestOptions(platform="grok3"))
        assert selection.platform == "grok3"
        assert selection.is_user_preferred is True

    def test_override_during_fallback_not_user_preferred(self, selector):
        """Fallback hops are not treated as user choices"""
        selection = selector.select(
            TaskType.CODE, RequestOptions(platform="grok3", is_fallback=True)
        )
        assert selection.is_user_preferred is False

    def test_unknown_override_raises(self, selector):
        """Unregistered override names are rejected"""
        with pytest.raises(UnknownPlatformError):
            selector.select(TaskType.CODE, RequestOptions(platform="nonexistent"))

    def test_cost_optimization(self, selector):
        """Non-premium cost optimization selects the fallback slot"""
        selection = selector.select(TaskType.CODE, RequestOptions(optimize_cost=True))
        assert selection.platform == "local"
        assert selection.is_cost_optimized is True

    def test_premium_users_skip_cost_optimization(self, selector):
        """Premium users keep the primary even when optimizing cost"""
        selection = selector.select(
            TaskType.CODE, RequestOptions(optimize_cost=True, is_premium_user=True)
        )
        assert selection.platform == "copilot"
        assert selection.is_cost_optimized is False


class TestAvailability:
    """Test is_available()"""

    def test_local_requires_feature_flag(self):
        """Local models are unavailable unless enabled"""
        selector = PlatformSelector(make_registry(), features=FeatureFlags())
        assert selector.is_available("local") is False
        assert selector.is_available("chatgpt") is True

    def test_attempted_platforms_unavailable(self, selector):
        """Already-attempted platforms are excluded"""
        assert selector.is_available("copilot", ["copilot"]) is False

    def test_unregistered_unavailable(self, selector):
        """Unknown names are never available"""
        assert selector.is_available("nonexistent") is False
        assert selector.is_available(None) is False


class TestCandidates:
    """Test fallback chain ordering"""

    def test_chain_is_task_triple(self, selector):
        """By default the chain is the task's primary, secondary and fallback"""
        chain = selector.candidates(TaskType.CODE, "code")
        assert chain == ["copilot", "deepseek", "local"]

    def test_attempted_excluded(self, selector):
        """Attempted platforms drop out of the chain"""
        chain = selector.candidates(TaskType.CODE, "code", ["copilot"])
        assert chain == ["deepseek", "local"]

    def test_recommendation_does_not_jump_triple(self, selector):
        """Recommendations cannot displace the secondary"""
        chain = selector.candidates(TaskType.CODE, "code", ["copilot"], ["perplexity", "gemini"])
        assert chain == ["deepseek", "local"]

    def test_triple_exhausted_raises_without_extended(self, selector):
        """Other registered platforms are not walked by default"""
        with pytest.raises(NoAvailableProvider):
            selector.candidates(TaskType.CODE, "code", ["copilot", "deepseek", "local"])

    def test_extended_walks_domain_list(self, selector):
        """Extended fallback continues with the domain list after the triple"""
        chain = selector.candidates(TaskType.CODE, "code", extended=True)
        assert chain[:3] == ["copilot", "deepseek", "local"]
        assert chain[3:] == ["chatgpt", "perplexity", "gemini", "grok3", "vertix"]

    def test_extended_recommendation_leads_domain_list(self, selector):
        """Recommended platforms come right after the triple"""
        chain = selector.candidates(
            TaskType.CODE, "code", ["copilot"], ["gemini", "copilot"], extended=True
        )
        assert chain[:3] == ["deepseek", "local", "gemini"]
        assert "copilot" not in chain

    def test_unknown_recommendation_ignored(self, selector):
        """Recommendations outside the registry are ignored"""
        chain = selector.candidates(TaskType.CODE, "code", [], ["nonexistent"], extended=True)
        assert chain[0] == "copilot"
        assert "nonexistent" not in chain

    def test_unknown_domain_uses_default_list(self, selector):
        """Unknown domains fall back to the default priority list"""
        chain = selector.candidates(TaskType.GENERAL, "klingon", extended=True)
        assert chain == [
            "chatgpt", "deepseek", "local", "perplexity", "gemini", "grok3", "vertix", "copilot"
        ]

    def test_exhaustion_raises(self, selector):
        """No remaining platforms raises NoAvailableProvider"""
        with pytest.raises(NoAvailableProvider) as exc_info:
            selector.candidates(TaskType.CODE, "code", PLATFORMS, extended=True)
        assert exc_info.value.domain == "code"
        assert sorted(exc_info.value.attempted) == sorted(PLATFORMS)

    def test_local_filtered_when_disabled(self):
        """Local drops out of the chain when local models are off"""
        selector = PlatformSelector(make_registry(), features=FeatureFlags())
        assert selector.candidates(TaskType.CODE, "code") == ["copilot", "deepseek"]


class TestRoute:
    """Test route()"""

    @pytest.mark.asyncio
    async def test_code_request(self, selector):
        """A code request routes to a code-capable platform"""
        decision = await selector.route("Write a function to reverse a string", "user-1")
        assert decision.task_type is TaskType.CODE
        assert decision.platform in {"copilot", "deepseek", "local"}
        assert decision.domain == "code"
        assert decision.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_unavailable_selection_replaced(self):
        """A cost-optimized local pick is replaced when local is disabled"""
        selector = PlatformSelector(make_registry(), features=FeatureFlags())
        decision = await selector.route(
            "Write a function to reverse a string",
            "user-1",
            options=RequestOptions(optimize_cost=True),
        )
        assert decision.platform == "copilot"
        assert decision.is_cost_optimized is True

    @pytest.mark.asyncio
    async def test_unknown_override_propagates(self, selector):
        """Unknown platforms are surfaced to the caller"""
        with pytest.raises(UnknownPlatformError):
            await selector.route("hello", "user-1", options=RequestOptions(platform="nope"))

    @pytest.mark.asyncio
    async def test_error_fallback_decision(self):
        """An internal routing failure yields the fixed error-fallback decision"""

        class BrokenClassifier(TaskClassifier):
            async def classify(self, user_input, context=(), options=None):
                raise RuntimeError("classifier exploded")

        selector = PlatformSelector(make_registry(), BrokenClassifier())
        decision = await selector.route("hello", "user-1")

        assert decision.is_error_fallback is True
        assert decision.task_type is TaskType.GENERAL
        assert decision.platform == ERROR_FALLBACK_SELECTION.platform
        assert decision.secondary == "deepseek"
        assert decision.fallback == "local"
