from .locking import InMemoryLockStrategy
from .providers import InMemoryContainerRegistry, StaticCloudProvider, StaticDnsProvider

__all__ = [
    "InMemoryContainerRegistry",
    "InMemoryLockStrategy",
    "StaticCloudProvider",
    "StaticDnsProvider",
]
