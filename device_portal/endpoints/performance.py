"""Resource manager endpoints: system performance and running processes.

Both are available as a one-shot GET and as a WebSocket stream on the same
path. The system performance payload is sometimes wrapped in a
{"Reason": "<escaped json>"} envelope; the request pipeline unwraps it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..protocol import RUNNING_PROCESSES_API, SYSTEM_PERF_API

if TYPE_CHECKING:
    from ..session import PortalSession
    from ..ws_client import PortalWsChannel


@dataclass(frozen=True)
class GpuAdapter:
    description: str = ""
    dedicated_memory: int = 0
    dedicated_memory_used: int = 0
    system_memory: int = 0
    system_memory_used: int = 0
    engines_utilization: tuple[float, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GpuAdapter:
        return cls(
            description=data.get("Description", ""),
            dedicated_memory=int(data.get("DedicatedMemory", 0) or 0),
            dedicated_memory_used=int(data.get("DedicatedMemoryUsed", 0) or 0),
            system_memory=int(data.get("SystemMemory", 0) or 0),
            system_memory_used=int(data.get("SystemMemoryUsed", 0) or 0),
            engines_utilization=tuple(
                float(v) for v in data.get("EnginesUtilization") or ()
            ),
        )


@dataclass(frozen=True)
class NetworkPerformance:
    bytes_in: int = 0
    bytes_out: int = 0


@dataclass(frozen=True)
class SystemPerformanceInformation:
    """Snapshot from api/resourcemanager/systemperf.

    Memory figures are in pages unless the name says otherwise.
    """

    available_pages: int = 0
    commit_limit: int = 0
    committed_pages: int = 0
    cpu_load: int = 0
    io_other_speed: int = 0
    io_read_speed: int = 0
    io_write_speed: int = 0
    non_paged_pool_pages: int = 0
    page_size: int = 0
    paged_pool_pages: int = 0
    total_installed_kb: int = 0
    total_pages: int = 0
    gpu_adapters: tuple[GpuAdapter, ...] = ()
    network: NetworkPerformance | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemPerformanceInformation:
        gpu = data.get("GPUData") or {}
        net = data.get("NetworkingData")
        return cls(
            available_pages=int(data.get("AvailablePages", 0) or 0),
            commit_limit=int(data.get("CommitLimit", 0) or 0),
            committed_pages=int(data.get("CommittedPages", 0) or 0),
            cpu_load=int(data.get("CpuLoad", 0) or 0),
            io_other_speed=int(data.get("IOOtherSpeed", 0) or 0),
            io_read_speed=int(data.get("IOReadSpeed", 0) or 0),
            io_write_speed=int(data.get("IOWriteSpeed", 0) or 0),
            non_paged_pool_pages=int(data.get("NonPagedPoolPages", 0) or 0),
            page_size=int(data.get("PageSize", 0) or 0),
            paged_pool_pages=int(data.get("PagedPoolPages", 0) or 0),
            total_installed_kb=int(data.get("TotalInstalledInKb", 0) or 0),
            total_pages=int(data.get("TotalPages", 0) or 0),
            gpu_adapters=tuple(
                GpuAdapter.from_dict(a) for a in gpu.get("AvailableAdapters") or ()
            ),
            network=(
                NetworkPerformance(
                    bytes_in=int(net.get("NetworkInBytes", 0) or 0),
                    bytes_out=int(net.get("NetworkOutBytes", 0) or 0),
                )
                if net
                else None
            ),
        )


@dataclass(frozen=True)
class DeviceProcessInfo:
    process_id: int
    image_name: str = ""
    app_name: str = ""
    cpu_usage: float = 0.0
    user_name: str = ""
    package_full_name: str = ""
    working_set_size: int = 0
    private_working_set: int = 0
    virtual_size: int = 0
    is_running: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceProcessInfo:
        return cls(
            process_id=int(data.get("ProcessId", 0) or 0),
            image_name=data.get("ImageName", ""),
            app_name=data.get("AppName", ""),
            cpu_usage=float(data.get("CPUUsage", 0.0) or 0.0),
            user_name=data.get("UserName", ""),
            package_full_name=data.get("PackageFullName", ""),
            working_set_size=int(data.get("WorkingSetSize", 0) or 0),
            private_working_set=int(data.get("PrivateWorkingSet", 0) or 0),
            virtual_size=int(data.get("VirtualSize", 0) or 0),
            is_running=bool(data.get("IsRunning", True)),
        )


@dataclass(frozen=True)
class RunningProcesses:
    processes: tuple[DeviceProcessInfo, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunningProcesses:
        return cls(
            processes=tuple(
                DeviceProcessInfo.from_dict(p) for p in data.get("Processes") or ()
            )
        )

    def contains(self, image_name: str) -> bool:
        wanted = image_name.lower()
        return any(p.image_name.lower() == wanted for p in self.processes)


async def get_system_perf(portal: PortalSession) -> SystemPerformanceInformation:
    return await portal.get(
        SYSTEM_PERF_API, parse=SystemPerformanceInformation.from_dict
    )


async def get_running_processes(portal: PortalSession) -> RunningProcesses:
    return await portal.get(RUNNING_PROCESSES_API, parse=RunningProcesses.from_dict)


async def start_listening_for_system_perf(
    portal: PortalSession,
    callback: Callable[[SystemPerformanceInformation], None],
) -> PortalWsChannel:
    return await portal.subscribe(
        SYSTEM_PERF_API, callback, parse=SystemPerformanceInformation.from_dict
    )


async def stop_listening_for_system_perf(portal: PortalSession) -> None:
    await portal.unsubscribe(SYSTEM_PERF_API)


async def start_listening_for_running_processes(
    portal: PortalSession,
    callback: Callable[[RunningProcesses], None],
) -> PortalWsChannel:
    return await portal.subscribe(
        RUNNING_PROCESSES_API, callback, parse=RunningProcesses.from_dict
    )


async def stop_listening_for_running_processes(portal: PortalSession) -> None:
    await portal.unsubscribe(RUNNING_PROCESSES_API)
