"""Platform adapters."""

from portscope.adapters.base import AdapterKind, PlatformAdapter
from portscope.adapters.container import ContainerRuntimeAdapter
from portscope.adapters.docker_client import DockerClient
from portscope.adapters.hypervisor import HypervisorAdapter
from portscope.adapters.management import HttpManagementClient, ManagementClient
from portscope.adapters.os_sockets import OSSocketAdapter
from portscope.adapters.scoring import CompatibilityScorer, Signal, select_adapter

__all__ = [
    "AdapterKind",
    "PlatformAdapter",
    "ContainerRuntimeAdapter",
    "DockerClient",
    "HypervisorAdapter",
    "HttpManagementClient",
    "ManagementClient",
    "OSSocketAdapter",
    "CompatibilityScorer",
    "Signal",
    "select_adapter",
]
