from __future__ import annotations
import csv
import io
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psutil

from .errors import ConfigurationError
from .models import TelemetryMeta, TelemetrySnapshot

_DEFAULT_INTERVALS = {
    "CPU": 1.0,
    "NET": 5.0,
    "CONN": 5.0,
    "PROC": 5.0,
    "MEM": 5.0,
    "FILE": 15.0,
    "DISK": 30.0,
    "PERSIST": 600.0,
}


def default_interval_for(name: str) -> float:
    return _DEFAULT_INTERVALS.get(name.upper(), 5.0)


def _empty(name: str) -> TelemetrySnapshot:
    return TelemetrySnapshot(summary=f"{name}Snapshot(empty)", meta=TelemetryMeta(capturer=name))


# ──────────────────────────────────────────────
# CPU / memory
# ──────────────────────────────────────────────
class CPUCapturer:
    def __init__(self):
        self._total: Optional[float] = None
        self._per_cpu: List[float] = []
        # first reading of cpu_percent(None) is meaningless; prime it
        psutil.cpu_percent(interval=None, percpu=True)

    def name(self) -> str:
        return "CPU"

    def capture(self) -> None:
        per = psutil.cpu_percent(interval=None, percpu=True)
        self._per_cpu = [float(v) for v in per]
        self._total = sum(self._per_cpu) / len(self._per_cpu) if self._per_cpu else 0.0

    def get_info(self) -> TelemetrySnapshot:
        if self._total is None:
            return _empty(self.name())
        metrics = {"cpu.total_pct": self._total, "cpu.count": float(len(self._per_cpu))}
        for i, v in enumerate(self._per_cpu):
            metrics[f"cpu.core{i}.pct"] = v
        return TelemetrySnapshot(
            summary=f"CPUSnapshot(total={self._total:.1f}%, cores={len(self._per_cpu)})",
            metrics=metrics,
            meta=TelemetryMeta(capturer=self.name()),
        )

    def get_verbose_info(self) -> str:
        if self._total is None:
            return "CPU: no sample yet"
        lines = [f"total: {self._total:.1f}%"]
        lines += [f"core{i}: {v:.1f}%" for i, v in enumerate(self._per_cpu)]
        return "\n".join(lines)


class MemCapturer:
    def __init__(self):
        self._vm = None
        self._swap = None

    def name(self) -> str:
        return "MEM"

    def capture(self) -> None:
        self._vm = psutil.virtual_memory()
        self._swap = psutil.swap_memory()

    def get_info(self) -> TelemetrySnapshot:
        if self._vm is None:
            return _empty(self.name())
        vm, sw = self._vm, self._swap
        return TelemetrySnapshot(
            summary=f"MEMSnapshot(ram={vm.percent:.1f}%, swap={sw.percent:.1f}%)",
            metrics={
                "mem.ram.used_pct": float(vm.percent),
                "mem.ram.used_bytes": float(vm.used),
                "mem.ram.total_bytes": float(vm.total),
                "mem.swap.used_pct": float(sw.percent),
                "mem.swap.used_bytes": float(sw.used),
                "mem.swap.total_bytes": float(sw.total),
            },
            meta=TelemetryMeta(capturer=self.name()),
        )


# ──────────────────────────────────────────────
# Network throughput (delta between captures)
# ──────────────────────────────────────────────
class NetCapturer:
    def __init__(self):
        self._prev: Optional[Tuple[float, Any]] = None
        self._cur: Optional[Tuple[float, Any]] = None

    def name(self) -> str:
        return "NET"

    def capture(self) -> None:
        self._prev = self._cur
        self._cur = (time.monotonic(), psutil.net_io_counters())

    def is_warm(self) -> bool:
        return self._prev is not None

    def get_info(self) -> TelemetrySnapshot:
        if self._cur is None:
            return _empty(self.name())
        t1, c1 = self._cur
        metrics = {"net.rx_bytes_total": float(c1.bytes_recv), "net.tx_bytes_total": float(c1.bytes_sent)}
        summary = "NETSnapshot(warming up)"
        if self._prev is not None:
            t0, c0 = self._prev
            dt = max(0.001, t1 - t0)
            rx = max(0.0, (c1.bytes_recv - c0.bytes_recv) / dt)
            tx = max(0.0, (c1.bytes_sent - c0.bytes_sent) / dt)
            metrics["net.rx_bytes_per_sec"] = rx
            metrics["net.tx_bytes_per_sec"] = tx
            summary = f"NETSnapshot(rx={rx:.0f}B/s, tx={tx:.0f}B/s)"
        return TelemetrySnapshot(summary=summary, metrics=metrics, meta=TelemetryMeta(capturer=self.name()))


# ──────────────────────────────────────────────
# Processes / connections (new since previous capture)
# ──────────────────────────────────────────────
class ProcCapturer:
    def __init__(self, max_new: int = 200):
        self.max_new = max_new
        self._known: Optional[Dict[int, float]] = None     # pid -> create_time
        self._count = 0
        self._new: List[Dict[str, Any]] = []
        self._new_total = 0
        self._warm = False

    def name(self) -> str:
        return "PROC"

    def capture(self) -> None:
        current: Dict[int, float] = {}
        new: List[Dict[str, Any]] = []
        for p in psutil.process_iter(["pid", "ppid", "name", "exe", "cmdline", "username", "create_time"]):
            try:
                pid = int(p.info["pid"])
                ctime = float(p.info.get("create_time") or 0.0)
                current[pid] = ctime
                if self._known is not None and self._known.get(pid) != ctime:
                    new.append({
                        "pid": pid,
                        "ppid": int(p.info.get("ppid") or 0),
                        "name": p.info.get("name") or "",
                        "exe": p.info.get("exe") or "",
                        "cmdline": " ".join(p.info.get("cmdline") or []),
                        "user": p.info.get("username") or "",
                    })
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        # the first capture only seeds the baseline
        self._warm = self._known is not None
        self._known = current
        self._count = len(current)
        self._new = new[:self.max_new] if self._warm else []
        self._new_total = len(new) if self._warm else 0

    def is_warm(self) -> bool:
        return self._warm

    def get_info(self) -> TelemetrySnapshot:
        if self._known is None:
            return _empty(self.name())
        return TelemetrySnapshot(
            summary=f"PROCSnapshot(count={self._count}, new={self._new_total})",
            metrics={"proc.count": float(self._count), "proc.new": float(self._new_total)},
            fields={"proc.new": list(self._new)},
            meta=TelemetryMeta(capturer=self.name()),
        )


class ConnCapturer:
    def __init__(self, kind: str = "inet", max_new: int = 200):
        self.kind = kind or "inet"
        self.max_new = max_new
        self._known: Optional[set] = None
        self._count = 0
        self._new: List[Dict[str, Any]] = []
        self._new_total = 0
        self._warm = False

    def name(self) -> str:
        return "CONN"

    def capture(self) -> None:
        current = set()
        new: List[Dict[str, Any]] = []
        for c in psutil.net_connections(kind=self.kind):
            if not c.raddr:
                continue
            key = (c.pid or 0, c.laddr.ip if c.laddr else "", c.laddr.port if c.laddr else 0,
                   c.raddr.ip, c.raddr.port)
            current.add(key)
            if self._known is not None and key not in self._known:
                new.append({
                    "pid": key[0],
                    "local_ip": key[1], "local_port": key[2],
                    "remote_ip": key[3], "remote_port": key[4],
                    "status": c.status,
                })
        self._warm = self._known is not None
        self._known = current
        self._count = len(current)
        self._new_total = len(new) if self._warm else 0
        self._new = new[:self.max_new] if self._warm else []

    def is_warm(self) -> bool:
        return self._warm

    def get_info(self) -> TelemetrySnapshot:
        if self._known is None:
            return _empty(self.name())
        return TelemetrySnapshot(
            summary=f"CONNSnapshot(remote={self._count}, new={self._new_total})",
            metrics={"conn.count": float(self._count), "conn.new": float(self._new_total)},
            fields={"conn.new": list(self._new)},
            meta=TelemetryMeta(capturer=self.name()),
        )


# ──────────────────────────────────────────────
# Disk usage + IO rates
# ──────────────────────────────────────────────
class DiskCapturer:
    def __init__(self, paths: Optional[List[str]] = None):
        self.paths = list(paths or ["/"])
        self._usage: Dict[str, Any] = {}
        self._io_prev: Optional[Tuple[float, Any]] = None
        self._io_cur: Optional[Tuple[float, Any]] = None

    def name(self) -> str:
        return "DISK"

    def capture(self) -> None:
        usage = {}
        for p in self.paths:
            usage[p] = psutil.disk_usage(p)
        self._usage = usage
        self._io_prev = self._io_cur
        counters = psutil.disk_io_counters()
        self._io_cur = (time.monotonic(), counters) if counters is not None else None

    def get_info(self) -> TelemetrySnapshot:
        if not self._usage:
            return _empty(self.name())
        metrics: Dict[str, float] = {}
        parts = []
        for p, u in self._usage.items():
            metrics[f"disk.{p}.used_pct"] = float(u.percent)
            metrics[f"disk.{p}.free_bytes"] = float(u.free)
            parts.append(f"{p}={u.percent:.1f}%")
        if self._io_prev is not None and self._io_cur is not None:
            (t0, c0), (t1, c1) = self._io_prev, self._io_cur
            dt = max(0.001, t1 - t0)
            metrics["disk.read_bytes_per_sec"] = max(0.0, (c1.read_bytes - c0.read_bytes) / dt)
            metrics["disk.write_bytes_per_sec"] = max(0.0, (c1.write_bytes - c0.write_bytes) / dt)
        return TelemetrySnapshot(
            summary=f"DISKSnapshot({', '.join(parts)})",
            metrics=metrics,
            meta=TelemetryMeta(capturer=self.name()),
        )


# ──────────────────────────────────────────────
# Persistence locations
# ──────────────────────────────────────────────
def _is_windows() -> bool:
    return sys.platform.startswith("win")


_RUN_SUBKEY = r"Software\Microsoft\Windows\CurrentVersion"


def _read_run_keys() -> Dict[str, str]:
    """Run / RunOnce values of HKCU and HKLM as {label: command}."""
    if not _is_windows():
        return {}
    import winreg

    result: Dict[str, str] = {}
    for hive_name, hive in (("HKCU", winreg.HKEY_CURRENT_USER), ("HKLM", winreg.HKEY_LOCAL_MACHINE)):
        for leaf in ("Run", "RunOnce"):
            try:
                with winreg.OpenKey(hive, f"{_RUN_SUBKEY}\\{leaf}") as key:
                    for i in range(winreg.QueryInfoKey(key)[1]):
                        name, data, _ = winreg.EnumValue(key, i)
                        result[f"run:{hive_name}\\{leaf}\\{name}"] = str(data)
            except OSError:
                continue
    return result


def _read_scheduled_tasks() -> Dict[str, str]:
    """Non-Microsoft scheduled tasks as {label: status}."""
    if not _is_windows():
        return {}
    try:
        proc = subprocess.run(
            ["schtasks", "/query", "/fo", "CSV", "/nh"],
            capture_output=True, text=True, timeout=5,
            creationflags=0x08000000,   # CREATE_NO_WINDOW
        )
    except (OSError, subprocess.SubprocessError):
        return {}
    if proc.returncode != 0:
        return {}
    result: Dict[str, str] = {}
    for row in csv.reader(io.StringIO(proc.stdout)):
        if not row:
            continue
        task = row[0].strip().strip('"')
        if not task or task.startswith("TaskName") or task.startswith("\\Microsoft\\Windows\\"):
            continue
        result[f"task:{task}"] = row[1].strip().strip('"') if len(row) > 1 else ""
    return result


def _persistence_dirs() -> List[Path]:
    home = Path.home()
    if _is_windows():
        dirs = []
        for var in ("APPDATA", "PROGRAMDATA"):
            base = os.environ.get(var, "")
            if base:
                dirs.append(Path(base) / "Microsoft" / "Windows" / "Start Menu" / "Programs" / "Startup")
        return dirs
    if sys.platform == "darwin":
        return [home / "Library" / "LaunchAgents", Path("/Library/LaunchAgents"),
                Path("/Library/LaunchDaemons")]
    return [Path("/etc/cron.d"), Path("/etc/cron.daily"), Path("/etc/cron.hourly"),
            Path("/var/spool/cron/crontabs"), Path("/etc/systemd/system"),
            home / ".config" / "systemd" / "user", home / ".config" / "autostart",
            Path("/etc/xdg/autostart")]


def _read_dir_entries(folders: List[Path]) -> Dict[str, str]:
    """{label: "size:mtime_ns"} for every file directly inside the folders."""
    result: Dict[str, str] = {}
    for folder in folders:
        try:
            if not folder.is_dir():
                continue
            for f in folder.iterdir():
                try:
                    if f.is_file():
                        st = f.stat()
                        result[f"file:{f}"] = f"{st.st_size}:{st.st_mtime_ns}"
                except OSError:
                    continue
        except OSError:
            continue
    return result


class PersistCapturer:
    """Autorun locations; diffs each capture against the previous one."""
    def __init__(self, folders: Optional[List[Path]] = None):
        self.folders = folders if folders is not None else _persistence_dirs()
        self._prev: Optional[Dict[str, str]] = None
        self._cur: Optional[Dict[str, str]] = None

    def name(self) -> str:
        return "PERSIST"

    def collect(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        out.update(_read_run_keys())
        out.update(_read_dir_entries(self.folders))
        out.update(_read_scheduled_tasks())
        return out

    def capture(self) -> None:
        self._prev = self._cur
        self._cur = self.collect()

    def is_warm(self) -> bool:
        return self._prev is not None

    def get_info(self) -> TelemetrySnapshot:
        if self._cur is None:
            return _empty(self.name())
        metrics = {"persist.entries": float(len(self._cur))}
        fields: Dict[str, Any] = {}
        if self._prev is not None:
            added = sorted(k for k in self._cur if k not in self._prev)
            removed = sorted(k for k in self._prev if k not in self._cur)
            changed = sorted(k for k in self._cur if k in self._prev and self._cur[k] != self._prev[k])
            metrics["persist.added"] = float(len(added))
            metrics["persist.changed"] = float(len(changed))
            metrics["persist.removed"] = float(len(removed))
            if added or changed or removed:
                fields["persist.diff"] = {"added": added, "changed": changed, "removed": removed}
        return TelemetrySnapshot(
            summary=f"PERSISTSnapshot(entries={len(self._cur)})",
            metrics=metrics,
            fields=fields,
            meta=TelemetryMeta(capturer=self.name()),
        )


# ──────────────────────────────────────────────
# File changes (polling)
# ──────────────────────────────────────────────
class FileWatchCapturer:
    def __init__(self, paths: Optional[List[str]] = None, max_files: int = 50_000):
        self.paths = list(paths or [str(Path.home())])
        self.max_files = max_files
        self._prev: Optional[Dict[str, Tuple[int, int]]] = None
        self._events: List[Dict[str, str]] = []
        self._scanned = 0
        self._warm = False

    def name(self) -> str:
        return "FILE"

    def _scan(self) -> Dict[str, Tuple[int, int]]:
        out: Dict[str, Tuple[int, int]] = {}
        for root in self.paths:
            for dirpath, _dirs, files in os.walk(root):
                for fn in files:
                    if len(out) >= self.max_files:
                        return out
                    p = os.path.join(dirpath, fn)
                    try:
                        st = os.stat(p)
                    except OSError:
                        continue
                    out[p] = (int(st.st_size), int(st.st_mtime_ns))
        return out

    def capture(self) -> None:
        cur = self._scan()
        events: List[Dict[str, str]] = []
        if self._prev is not None:
            for p, meta in cur.items():
                old = self._prev.get(p)
                if old is None:
                    events.append({"path": p, "type": "create"})
                elif old != meta:
                    events.append({"path": p, "type": "modify"})
            for p in self._prev:
                if p not in cur:
                    events.append({"path": p, "type": "delete"})
        self._warm = self._prev is not None
        self._prev = cur
        self._scanned = len(cur)
        self._events = events

    def is_warm(self) -> bool:
        return self._warm

    def get_info(self) -> TelemetrySnapshot:
        if self._prev is None:
            return _empty(self.name())
        return TelemetrySnapshot(
            summary=f"FILESnapshot(files={self._scanned}, events={len(self._events)})",
            metrics={"file.scanned": float(self._scanned), "file.events": float(len(self._events))},
            fields={"file.events": list(self._events)},
            meta=TelemetryMeta(capturer=self.name(), max_files=self.max_files),
        )


def build_capturers(cfg) -> List[Any]:
    """Enabled capturers from an AgentConfig."""
    out: List[Any] = []
    if cfg.cpu_enabled:
        out.append(CPUCapturer())
    if cfg.mem_enabled:
        out.append(MemCapturer())
    if cfg.net_enabled:
        out.append(NetCapturer())
    if cfg.proc_enabled:
        out.append(ProcCapturer())
    if cfg.conn_enabled:
        out.append(ConnCapturer(cfg.conn_kind))
    if cfg.disk_enabled:
        out.append(DiskCapturer(cfg.disk_paths))
    if cfg.persist_enabled:
        out.append(PersistCapturer())
    if cfg.filewatch_enabled:
        out.append(FileWatchCapturer(cfg.filewatch_paths, cfg.filewatch_max_files))
    if not out:
        raise ConfigurationError("no capturers enabled by config")
    return out
