"""Collector exporting CPU, memory and file descriptor usage of a process."""

from __future__ import annotations

import mmap
import os
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from .metric import Desc, Metric, ValueType, new_const_metric, new_invalid_metric

PidFn = Callable[[], int]

_USER_HZ = 100
_UNLIMITED = float(2**64 - 1)
_DEFAULT_PROC = "/proc"


class PidFileError(Exception):
    """Raised when a pid file cannot be read or parsed."""


@dataclass
class ProcessCollectorOpts:
    """Options for a process collector.

    ``pid_fn`` returns the pid to inspect (defaults to the current process),
    ``namespace`` prefixes every metric name, ``report_errors`` turns
    collection failures into invalid metrics, and ``proc_path`` is the root
    of the proc filesystem.
    """

    pid_fn: PidFn | None = None
    namespace: str = ""
    report_errors: bool = False
    proc_path: str = _DEFAULT_PROC


def _proc_available(proc_path: str) -> bool:
    return os.path.isdir(proc_path)


def can_collect_process() -> bool:
    """Return True if a proc filesystem is available."""
    return _proc_available(_DEFAULT_PROC)


def _invalid_desc(error: Exception) -> Desc:
    desc = Desc("", "")
    desc.error = error
    return desc


@dataclass(frozen=True)
class _ProcStat:
    utime: int
    stime: int
    starttime: int
    vsize: int
    rss: int

    @property
    def cpu_time(self) -> float:
        return (self.utime + self.stime) / _USER_HZ

    @property
    def resident_memory(self) -> int:
        return self.rss * mmap.PAGESIZE


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as handle:
        return handle.read()


def _read_proc_stat(proc_dir: str) -> _ProcStat:
    text = _read_text(os.path.join(proc_dir, "stat"))
    close = text.rfind(")")
    if close < 0:
        raise ValueError(f"malformed stat file in {proc_dir!r}")
    fields = text[close + 1 :].split()
    if len(fields) < 22:
        raise ValueError(f"too few fields in stat file in {proc_dir!r}")
    return _ProcStat(
        utime=int(fields[11]),
        stime=int(fields[12]),
        starttime=int(fields[19]),
        vsize=int(fields[20]),
        rss=int(fields[21]),
    )


def _read_boot_time(proc_path: str) -> int:
    for line in _read_text(os.path.join(proc_path, "stat")).splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[0] == "btime":
            return int(parts[1])
    raise ValueError("couldn't find btime in stat file")


def _parse_limit(text: str) -> float:
    if text == "unlimited":
        return _UNLIMITED
    return float(int(text))


def _read_limits(proc_dir: str) -> tuple[float, float]:
    open_files = 0.0
    address_space = 0.0
    for line in _read_text(os.path.join(proc_dir, "limits")).splitlines()[1:]:
        columns = re.split(r"\s{2,}", line.strip())
        if len(columns) < 2:
            continue
        name, soft = columns[0], columns[1]
        if name == "Max open files":
            open_files = _parse_limit(soft)
        elif name == "Max address space":
            address_space = _parse_limit(soft)
    return open_files, address_space


class ProcessCollector:
    """Collects process metrics from a Linux-style proc filesystem."""

    def __init__(self, opts: ProcessCollectorOpts | None = None) -> None:
        opts = opts or ProcessCollectorOpts()
        ns = f"{opts.namespace}_" if opts.namespace else ""
        self.report_errors = opts.report_errors
        self.proc_path = opts.proc_path
        self.cpu_total = Desc(
            ns + "process_cpu_seconds_total", "Total user and system CPU time spent in seconds."
        )
        self.open_fds = Desc(ns + "process_open_fds", "Number of open file descriptors.")
        self.max_fds = Desc(ns + "process_max_fds", "Maximum number of open file descriptors.")
        self.vsize = Desc(ns + "process_virtual_memory_bytes", "Virtual memory size in bytes.")
        self.max_vsize = Desc(
            ns + "process_virtual_memory_max_bytes",
            "Maximum amount of virtual memory available in bytes.",
        )
        self.rss = Desc(ns + "process_resident_memory_bytes", "Resident memory size in bytes.")
        self.start_time = Desc(
            ns + "process_start_time_seconds",
            "Start time of the process since unix epoch in seconds.",
        )
        if opts.pid_fn is None:
            pid = os.getpid()
            self._pid_fn: PidFn = lambda: pid
        else:
            self._pid_fn = opts.pid_fn
        self._supported = _proc_available(self.proc_path)

    def describe(self) -> Iterator[Desc]:
        """Yield the descriptors of all metrics this collector can produce."""
        yield self.cpu_total
        yield self.open_fds
        yield self.max_fds
        yield self.vsize
        yield self.max_vsize
        yield self.rss
        yield self.start_time

    def collect(self) -> Iterator[Metric]:
        """Yield the current process metrics."""
        if not self._supported:
            yield from self._report_error(
                None, OSError("process metrics not supported on this platform")
            )
            return
        yield from self._process_collect()

    def _report_error(self, desc: Desc | None, error: Exception) -> Iterator[Metric]:
        if not self.report_errors:
            return
        yield new_invalid_metric(desc if desc is not None else _invalid_desc(error), error)

    def _process_collect(self) -> Iterator[Metric]:
        try:
            pid = self._pid_fn()
        except Exception as exc:  # noqa: BLE001 - any failure of the pid source is reported
            yield from self._report_error(None, exc)
            return

        proc_dir = os.path.join(self.proc_path, str(pid))
        if not os.path.isdir(proc_dir):
            yield from self._report_error(
                None, FileNotFoundError(f"no such process directory: {proc_dir}")
            )
            return

        try:
            stat = _read_proc_stat(proc_dir)
        except (OSError, ValueError) as exc:
            yield from self._report_error(None, exc)
        else:
            yield new_const_metric(self.cpu_total, ValueType.COUNTER, stat.cpu_time)
            yield new_const_metric(self.vsize, ValueType.GAUGE, float(stat.vsize))
            yield new_const_metric(self.rss, ValueType.GAUGE, float(stat.resident_memory))
            try:
                boot = _read_boot_time(self.proc_path)
            except (OSError, ValueError) as exc:
                yield from self._report_error(self.start_time, exc)
            else:
                start = boot + stat.starttime / _USER_HZ
                yield new_const_metric(self.start_time, ValueType.GAUGE, start)

        try:
            fds = len(os.listdir(os.path.join(proc_dir, "fd")))
        except OSError as exc:
            yield from self._report_error(self.open_fds, exc)
        else:
            yield new_const_metric(self.open_fds, ValueType.GAUGE, float(fds))

        try:
            open_files, address_space = _read_limits(proc_dir)
        except (OSError, ValueError) as exc:
            yield from self._report_error(None, exc)
        else:
            yield new_const_metric(self.max_fds, ValueType.GAUGE, open_files)
            yield new_const_metric(self.max_vsize, ValueType.GAUGE, address_space)


def new_pid_file_fn(pid_file_path: str) -> PidFn:
    """Return a function reading a pid from the given file on each call."""

    def read_pid() -> int:
        try:
            with open(pid_file_path, encoding="utf-8") as handle:
                content = handle.read()
        except OSError as exc:
            raise PidFileError(f'can\'t read pid file "{pid_file_path}": {exc}') from exc
        text = content.strip()
        if not re.fullmatch(r"[+-]?[0-9]+", text):
            raise PidFileError(
                f'can\'t parse pid file "{pid_file_path}": invalid syntax in {text!r}'
            )
        return int(text)

    return read_pid