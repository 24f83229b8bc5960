"""GreptimeDB cluster operations on bare metal.

A bare-metal cluster lives in a base directory. Its metadata file is a YAML
document with these keys:

* ``config``: the cluster configuration, holding ``cluster.frontend``,
  ``cluster.datanode`` and ``cluster.meta`` (each with ``replicas``),
  ``cluster.artifact.version`` and ``etcd.artifact.version``;
* ``creationDate``: when the cluster was created;
* ``clusterDir``: the directory holding the runtime data of the cluster;
* ``foregroundPid``: the pid of the process that runs the cluster.

Each running component leaves a ``pid`` file in a directory of its own under
``<clusterDir>/pids``.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Iterable, Mapping, NoReturn, Optional, Sequence, TextIO

import yaml

from gtctl.cluster_types import (
    ComponentKind,
    ConnectOptions,
    DeleteOptions,
    GetOptions,
    ListOptions,
    ScaleOptions,
)

CLUSTER_PIDS_DIR = "pids"

_ETCD_HEALTH_RETRIES = 10


class UnsupportedOperationError(RuntimeError):
    """Raised for operations that a bare-metal cluster does not offer."""


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, Mapping):
            return None
        data = data.get(key)
    return data


def collect_pids(pids_dir: str | os.PathLike[str]) -> dict[str, str]:
    """Return the content of the pid file of each component under pids_dir."""
    pids: dict[str, str] = {}
    root = Path(pids_dir)
    if not root.is_dir():
        return pids

    for current, dirs, _files in os.walk(root):
        dirs.sort()
        current_path = Path(current)
        if current_path.name != CLUSTER_PIDS_DIR:
            try:
                pids[current_path.name] = (current_path / "pid").read_text()
            except OSError:
                return pids
    return pids


def collect_cluster_info(data: Mapping[str, Any]) -> tuple[list[str], list[str], list[list[str]]]:
    """Return the headers, footers and rows describing a bare-metal cluster."""
    headers = ["COMPONENT", "PID"]
    cluster_dir = str(data.get("clusterDir") or "")
    pids = collect_pids(os.path.join(cluster_dir, CLUSTER_PIDS_DIR))
    config = data.get("config") or {}

    bulk: list[list[str]] = []
    components = (
        (ComponentKind.FRONTEND, "frontend"),
        (ComponentKind.DATANODE, "datanode"),
        (ComponentKind.META, "meta"),
    )
    for kind, key in components:
        replicas = int(_dig(config, "cluster", key, "replicas") or 0)
        for i in range(replicas):
            pid = pids.get(f"{kind.value}.{i}")
            bulk.append([kind.value, f".{i}: {pid}" if pid is not None else "N/A"])
    bulk.append(["etcd", pids.get("etcd", "")])

    footers = [
        f"CREATION-DATE: {data.get('creationDate', '')}",
        f"GREPTIMEDB-VERSION: {_dig(config, 'cluster', 'artifact', 'version') or ''}",
        f"ETCD-VERSION: {_dig(config, 'etcd', 'artifact', 'version') or ''}",
        f"CLUSTER-DIR: {cluster_dir}",
    ]
    try:
        dumped = yaml.safe_dump(config, sort_keys=False)
    except yaml.YAMLError as exc:
        footers.append(f"CLUSTER-CONFIG: error retrieving cluster config: {exc}")
    else:
        footers.append(f"CLUSTER-CONFIG:\n{dumped}")

    return headers, footers, bulk


def has_etcd_leader(output: str) -> bool:
    """Tell whether ``etcdctl endpoint status`` output reports a leader.

    The default output has one endpoint per line, and its fifth
    comma-separated field is the IS LEADER column.
    """
    for line in output.split("\n"):
        fields = line.split(",")
        if len(fields) > 4 and fields[4].strip() == "true":
            return True
    return False


def is_process_running(pid: int) -> bool:
    """Tell whether a process with this pid accepts signals from us."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True


def _render_table(headers: Sequence[str], rows: Iterable[Sequence[str]], out: TextIO) -> None:
    """Write a bordered table with row lines, merging repeated cells."""
    cleaned = [[str(cell).strip() for cell in row] for row in rows]
    merged: list[list[str]] = []
    previous: Optional[list[str]] = None
    for row in cleaned:
        shown = []
        for col, cell in enumerate(row):
            same_prefix = previous is not None and previous[: col + 1] == row[: col + 1]
            shown.append("" if same_prefix and cell else cell)
        merged.append(shown)
        previous = row

    widths = [len(h) for h in headers]
    for row in merged:
        widths = [max(w, len(c)) for w, c in zip(widths, row)]

    border = "+" + "+".join("-" * (w + 2) for w in widths) + "+\n"

    def line(cells: Sequence[str]) -> str:
        return "|" + "|".join(f" {c.ljust(w)} " for c, w in zip(cells, widths)) + "|\n"

    out.write(border)
    out.write(line(headers))
    out.write(border)
    for row in merged:
        out.write(line(row))
        out.write(border)


class BareMetalCluster:
    """Inspects and removes a GreptimeDB cluster that runs on bare metal."""

    def __init__(
        self,
        base_dir: str | os.PathLike[str],
        config_path: str | os.PathLike[str],
        *,
        logs_dir: str | os.PathLike[str] | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.config_path = Path(config_path)
        self.logs_dir = Path(logs_dir) if logs_dir is not None else self.base_dir / "logs"
        self._log = logger or logging.getLogger(__name__)

    def _load(self, name: str) -> dict:
        if not self.base_dir.exists():
            raise LookupError(f"cluster {name} is not exist")
        if not self.config_path.is_file():
            raise LookupError(f"cluster {name} is not exist")
        return yaml.safe_load(self.config_path.read_text()) or {}

    def _reject(self, operation: str, options: Any) -> NoReturn:
        name = getattr(options, "name", "") or ""
        self._log.debug("'%s' is unavailable for bare-metal cluster '%s' in %s",
                        operation, name, self.base_dir)
        raise UnsupportedOperationError("do not support")

    def get(self, options: GetOptions) -> dict:
        """Render the components of the cluster and return its metadata."""
        data = self._load(options.name)
        headers, footers, bulk = collect_cluster_info(data)
        out = options.output if options.output is not None else sys.stdout
        _render_table(headers, bulk, out)
        for footer in footers:
            self._log.info("%s", footer)
        return data

    def delete(self, options: DeleteOptions) -> None:
        """Remove the directories of a cluster that is not running."""
        data = self._load(options.name)
        pid = int(data.get("foregroundPid") or 0)
        if is_process_running(pid):
            raise RuntimeError(f"cluster '{options.name}' is running, please stop it before deleting")

        self._log.info("Deleting cluster configurations and runtime directories in %s", self.base_dir)
        if self.base_dir.exists():
            shutil.rmtree(self.base_dir)
        self._log.info("Deleted!")

    def list(self, options: ListOptions) -> None:
        """Listing is refused on bare metal with UnsupportedOperationError."""
        self._reject("list", options)

    def scale(self, options: ScaleOptions) -> None:
        """Scaling is refused on bare metal with UnsupportedOperationError."""
        self._reject("scale", options)

    def connect(self, options: ConnectOptions) -> None:
        """Connecting is refused on bare metal with UnsupportedOperationError."""
        self._reject("connect", options)

    def _check_etcd_health(self, etcd_bin: str | os.PathLike[str]) -> None:
        # etcdctl is very likely installed next to etcd.
        etcdctl = Path(etcd_bin).parent / "etcdctl"
        if not etcdctl.is_file():
            self._log.debug("'etcdctl' is not found under the same directory of 'etcd', "
                            "skip checking the healthy of Etcd.")
            return

        for _ in range(_ETCD_HEALTH_RETRIES):
            result = subprocess.run([str(etcdctl), "endpoint", "status"],
                                    check=True, capture_output=True, text=True)
            if has_etcd_leader(result.stdout):
                return
            time.sleep(1)

        raise RuntimeError(
            f"etcd is not ready in 10 second! You can find its logs in {self.logs_dir / 'etcd'}"
        )