"""
Chicon runner - runs analysis functions against repositories in sandboxed containers.

- chicon.core: errors, logging, settings
- chicon.registry: function and repository definitions
- chicon.execution: provisioning, sandboxing, collection, scheduling
- chicon.cli: command-line interface
"""

__version__ = "0.3.0"
