"""Shard descriptors, the shard context and test assignment strategies."""

from autoshard.sharding.context import ShardContext
from autoshard.sharding.descriptor import ShardConfigurationError, ShardDescriptor
from autoshard.sharding.splitter import (
    collect_test_ids,
    discover_test_files,
    list_tests_with_command,
)
from autoshard.sharding.strategies import (
    STRATEGY_NAMES,
    FileSizeStrategy,
    HashBasedStrategy,
    HistoryWeightedStrategy,
    RoundRobinStrategy,
    ShardingStrategy,
    create_strategy,
)

__all__ = [
    "STRATEGY_NAMES",
    "FileSizeStrategy",
    "HashBasedStrategy",
    "HistoryWeightedStrategy",
    "RoundRobinStrategy",
    "ShardConfigurationError",
    "ShardContext",
    "ShardDescriptor",
    "ShardingStrategy",
    "collect_test_ids",
    "create_strategy",
    "discover_test_files",
    "list_tests_with_command",
]
