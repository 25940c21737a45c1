"""kina - Kubernetes in Apple Container.

Single-node Kubernetes clusters on Apple's VM-backed container runtime.

Example:

    import asyncio
    from kina import ClusterManager, CreateClusterOptions, discover_tools, resolve_config

    config = resolve_config()
    manager = ClusterManager(config, discover_tools(config.container, config.kubernetes))
    asyncio.run(manager.create(CreateClusterOptions.from_config(config, "dev")))
"""

__version__ = "0.1.0"

from kina.bootstrap.cni import CniPlugin
from kina.cluster import ClusterManager, CreateClusterOptions, CreateResult
from kina.config import KinaConfig, resolve_config
from kina.core.exceptions import (
    BootstrapError,
    ClusterAlreadyExistsError,
    ClusterNotFoundError,
    ConfigurationError,
    KinaError,
    ToolNotFoundError,
)
from kina.logging import LogConfig
from kina.runtime.model import Cluster, ClusterStatus, Node, NodeRole
from kina.tools import ToolPaths, discover_tools

__all__ = [
    "BootstrapError",
    "Cluster",
    "ClusterAlreadyExistsError",
    "ClusterManager",
    "ClusterNotFoundError",
    "ClusterStatus",
    "CniPlugin",
    "ConfigurationError",
    "CreateClusterOptions",
    "CreateResult",
    "KinaConfig",
    "KinaError",
    "LogConfig",
    "Node",
    "NodeRole",
    "ToolNotFoundError",
    "ToolPaths",
    "discover_tools",
    "resolve_config",
]
