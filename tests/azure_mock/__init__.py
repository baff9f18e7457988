"""Azure API Mock for testing.

Two layers:
- InMemoryProvider: a scriptable Provider for workflow tests (lag,
  failure injection, links, purge)
- MockAzureContext: patches the Azure SDK so AzureResourceProvider and
  the CLI run against in-memory ARM state (MockArmState)

Usage:
    provider = InMemoryProvider()
    provider.convergence_lag[key] = 3
    result = await DeploymentWorkflow(provider, ...).run(graph)

    with MockAzureContext() as ctx:
        outcome = run(options)
        assert ctx.state.exists(resource_id)
"""

from .clock import FakeClock
from .context import MockAzureContext
from .credential import MockCredential, create_mock_credential
from .provider import InMemoryProvider, forbidden, throttled
from .resources import (
    MockArmResource,
    MockArmState,
    MockProviderResourceType,
    MockResourceClient,
    MockResourceProvider,
    http_error,
    transport_error,
)

__all__ = [
    "FakeClock",
    "InMemoryProvider",
    "MockArmResource",
    "MockArmState",
    "MockAzureContext",
    "MockCredential",
    "MockProviderResourceType",
    "MockResourceClient",
    "MockResourceProvider",
    "create_mock_credential",
    "forbidden",
    "http_error",
    "throttled",
    "transport_error",
]
