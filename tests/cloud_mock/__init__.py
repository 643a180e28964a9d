"""In-memory cloud mock for engine tests.

Provides mock providers for every catalog resource type, a data source for
``data.ami`` lookups and a scriptable load balancer target group, so the
full load -> plan -> apply -> attach flow runs without a cloud account.

Key Features:
- Provider-assigned ids and computed outputs (ARNs, DNS names, IPs)
- Error injection per operation and resource type (transient or permanent)
- Out-of-band drift and deletion for StateConflict scenarios
- Call recording and peak concurrency tracking

Usage:
    from cloud_mock import MockCloud

    cloud = MockCloud()
    executor = Executor(cloud.registry(), store, config)
"""

from .cloud import ErrorRule, MockAmiLookup, MockCloud, MockObject, MockProvider
from .targets import MockTargetGroup

__all__ = [
    "ErrorRule",
    "MockAmiLookup",
    "MockCloud",
    "MockObject",
    "MockProvider",
    "MockTargetGroup",
]
