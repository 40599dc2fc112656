"""Registry clients: where function and repository definitions come from."""

from chicon.registry.client import HttpRegistryClient, RegistryClient
from chicon.registry.memory import InMemoryRegistry, load_seed

__all__ = [
    "HttpRegistryClient",
    "InMemoryRegistry",
    "RegistryClient",
    "load_seed",
]
