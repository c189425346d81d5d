"""
Tests for the operator runtime and command line entry point.

Covers:
- Command line overrides on top of environment configuration
- Enqueueing existing resources at start-up
- Running with and without leader election
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ha_redis_operator.__main__ import build_config, parse_args
from ha_redis_operator.config import BACKUP_KIND, CLUSTER_KIND, USER_KIND, OperatorConfig
from ha_redis_operator.errors import TransientError
from ha_redis_operator.models import ResourceKey
from ha_redis_operator.runtime import OperatorRuntime

from conftest import FakeResourceClient, cluster_body, user_body


class TestCommandLine:
    """Test argument parsing and config overrides."""

    def test_defaults_come_from_environment(self):
        config = build_config(parse_args([]), {"HA_REDIS_OPERATOR_RESYNC_INTERVAL": "45"})

        assert config.resync_interval == 45.0
        assert config.leader_election is True
        assert config.namespace is None

    def test_namespace_override(self):
        config = build_config(
            parse_args(["--namespace", "cache"]),
            {"HA_REDIS_OPERATOR_NAMESPACE": "other"},
        )
        assert config.namespace == "cache"

    def test_log_level_is_upper_cased(self):
        assert build_config(parse_args(["--log-level", "debug"]), {}).log_level == "DEBUG"

    def test_disable_leader_election(self):
        assert build_config(parse_args(["--no-leader-election"]), {}).leader_election is False


@pytest.fixture
async def runtime(mock_logger) -> OperatorRuntime:
    config = OperatorConfig(identity="operator-a", leader_election=False)
    runtime = OperatorRuntime(config, api_client=MagicMock(), logger=mock_logger)
    runtime.resources = FakeResourceClient()
    return runtime


class TestEnqueueAll:
    """Test the initial full listing."""

    @pytest.mark.asyncio
    async def test_enqueues_every_kind(self, runtime):
        runtime.resources.add(CLUSTER_KIND, cluster_body("cache"))
        runtime.resources.add(USER_KIND, user_body("app", namespace="apps"))
        runtime.engine.enqueue = MagicMock()

        assert await runtime.enqueue_all() == 2

        enqueued = {c.args[0] for c in runtime.engine.enqueue.call_args_list}
        assert enqueued == {
            ResourceKey(CLUSTER_KIND, "default", "cache"),
            ResourceKey(USER_KIND, "apps", "app"),
        }

    @pytest.mark.asyncio
    async def test_list_failure_skips_kind(self, runtime, mock_logger):
        runtime.resources.add(CLUSTER_KIND, cluster_body("cache"))
        listing = runtime.resources.list

        async def flaky_list(kind, namespace=None):
            if kind == BACKUP_KIND:
                raise TransientError("list backups: 503")
            return await listing(kind, namespace)

        runtime.resources.list = flaky_list
        runtime.engine.enqueue = MagicMock()

        assert await runtime.enqueue_all() == 1
        mock_logger.error.assert_called_once()


class TestRun:
    """Test the run loop."""

    @pytest.mark.asyncio
    async def test_without_leader_election(self, runtime):
        runtime.start_engine = AsyncMock()
        runtime.stop_engine = AsyncMock()

        task = asyncio.create_task(runtime.run())
        await asyncio.sleep(0.01)
        runtime.stop()
        await asyncio.wait_for(task, 1.0)

        runtime.start_engine.assert_awaited_once()
        runtime.stop_engine.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_with_leader_election_campaigns(self, runtime):
        campaigning = asyncio.Event()

        async def campaign(on_started, on_stopped):
            campaigning.set()
            await asyncio.Event().wait()

        runtime.leader = MagicMock()
        runtime.leader.run = campaign

        task = asyncio.create_task(runtime.run())
        await asyncio.wait_for(campaigning.wait(), 1.0)
        runtime.stop()
        await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_close_releases_clients(self, runtime):
        async with runtime:
            pass

        runtime.api_client.close.assert_called_once()
