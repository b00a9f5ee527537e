"""
Host and metric sample row shapes read from the sample store.
"""

from dataclasses import dataclass, asdict, fields, is_dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional


@dataclass
class Host:
    """Monitored host, created on first contact and never hard-deleted"""
    uuid: str
    hostname: str
    system: str = ""
    os_version: str = ""
    uptime: int = 0
    sync_interval: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class CpuTimes:
    host_uuid: str
    created_at: datetime
    cuser: int = 0
    nice: int = 0
    system: int = 0
    idle: int = 0
    iowait: int = 0
    irq: int = 0
    softirq: int = 0
    steal: int = 0
    guest: int = 0
    guest_nice: int = 0
    id: Optional[int] = None


@dataclass(frozen=True)
class CpuStats:
    host_uuid: str
    created_at: datetime
    interrupts: int = 0
    ctx_switches: int = 0
    soft_interrupts: int = 0
    processes: int = 0
    procs_running: int = 0
    procs_blocked: int = 0
    id: Optional[int] = None


@dataclass(frozen=True)
class Memory:
    host_uuid: str
    created_at: datetime
    total: int = 0
    free: int = 0
    used: int = 0
    shared: int = 0
    buffers: int = 0
    cached: int = 0
    id: Optional[int] = None


@dataclass(frozen=True)
class Swap:
    host_uuid: str
    created_at: datetime
    total: int = 0
    free: int = 0
    used: int = 0
    id: Optional[int] = None


@dataclass(frozen=True)
class LoadAvg:
    host_uuid: str
    created_at: datetime
    one: float = 0.0
    five: float = 0.0
    fifteen: float = 0.0
    id: Optional[int] = None


@dataclass(frozen=True)
class Disk:
    host_uuid: str
    created_at: datetime
    disk_name: str = ""
    mount_point: str = ""
    total_space: int = 0
    avail_space: int = 0
    id: Optional[int] = None


@dataclass(frozen=True)
class IoNet:
    host_uuid: str
    created_at: datetime
    interface: str = ""
    rx_bytes: int = 0
    rx_packets: int = 0
    rx_errs: int = 0
    rx_drop: int = 0
    tx_bytes: int = 0
    tx_packets: int = 0
    tx_errs: int = 0
    tx_drop: int = 0
    id: Optional[int] = None


@dataclass(frozen=True)
class IoBlock:
    host_uuid: str
    created_at: datetime
    device_name: str = ""
    read_count: int = 0
    read_bytes: int = 0
    write_count: int = 0
    write_bytes: int = 0
    busy_time: int = 0
    id: Optional[int] = None


SAMPLE_TYPES = {
    'cputimes': CpuTimes,
    'cpustats': CpuStats,
    'memory': Memory,
    'swap': Swap,
    'loadavg': LoadAvg,
    'disks': Disk,
    'ionets': IoNet,
    'ioblocks': IoBlock,
}

TABLE_ALIASES = {
    'cpu_times': 'cputimes',
    'cpu_stats': 'cpustats',
    'disk': 'disks',
    'io_net': 'ionets',
    'ionet': 'ionets',
    'io_block': 'ioblocks',
    'ioblock': 'ioblocks',
    'load_avg': 'loadavg',
}


def resolve_table(name: str) -> str:
    """
    Map a table name or alias to its canonical sample table.

    Raises:
        KeyError: If the table is unknown
    """
    key = name.strip().lower()
    key = TABLE_ALIASES.get(key, key)
    if key not in SAMPLE_TYPES:
        raise KeyError(f"Unknown sample table: {name}")
    return key


def sample_columns(table: str):
    """Column names of a sample table, excluding the row id"""
    return [f.name for f in fields(SAMPLE_TYPES[resolve_table(table)]) if f.name != 'id']


def fields_of(sample: Any) -> Dict[str, Any]:
    """Return a sample's fields as a plain dict (samples may be dataclasses or mappings)"""
    if is_dataclass(sample):
        return asdict(sample)
    if isinstance(sample, Mapping):
        return dict(sample)
    raise TypeError(f"Unsupported sample type: {type(sample).__name__}")
