"""Options shared by the cluster operations."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, TextIO


class _Spinner(Protocol):
    def start(self, message: str) -> None: ...

    def stop(self, success: bool, message: str) -> None: ...


class ComponentKind(str, enum.Enum):
    """A scalable component of a GreptimeDB cluster."""

    FRONTEND = "frontend"
    DATANODE = "datanode"
    META = "meta"


class ConnectProtocol(enum.IntEnum):
    """Database protocol used to connect to a cluster."""

    MYSQL = 0
    POSTGRES = 1

    @classmethod
    def parse(cls, value: str) -> "ConnectProtocol":
        """Map a protocol name given on the command line to a protocol."""
        if value == "mysql":
            return cls.MYSQL
        if value in ("pg", "psql", "postgres"):
            return cls.POSTGRES
        raise ValueError(f"unsupported connection protocol: {value}")


def _helm(key: str) -> Any:
    return field(default="", metadata={"helm": key})


@dataclass
class GetOptions:
    namespace: str = ""
    name: str = ""
    # Where table views are rendered; None means standard output.
    output: Optional[TextIO] = None


@dataclass
class ListOptions(GetOptions):
    pass


@dataclass
class ScaleOptions:
    new_replicas: int = 0
    old_replicas: int = 0
    namespace: str = ""
    name: str = ""
    component_type: Optional[ComponentKind] = None


@dataclass
class DeleteOptions:
    namespace: str = ""
    name: str = ""
    tear_down_etcd: bool = False


@dataclass
class CreateClusterOptions:
    """Options to create a GreptimeDB cluster; field metadata names helm values."""

    greptimedb_chart_version: str = ""
    use_greptime_cn_artifacts: bool = False
    values_file: str = ""

    image_registry: str = _helm("image.registry")
    initializer_image_registry: str = _helm("initializer.registry")
    datanode_storage_class_name: str = _helm("datanode.storage.storageClassName")
    datanode_storage_size: str = _helm("datanode.storage.storageSize")
    datanode_storage_retain_policy: str = _helm("datanode.storage.storageRetainPolicy")
    etcd_endpoints: str = _helm("meta.etcdEndpoints")
    config_values: str = _helm("*")


@dataclass
class CreateOperatorOptions:
    """Options to create a GreptimeDB operator."""

    greptimedb_operator_chart_version: str = ""
    use_greptime_cn_artifacts: bool = False
    values_file: str = ""

    image_registry: str = _helm("image.registry")
    config_values: str = _helm("*")


@dataclass
class CreateEtcdOptions:
    """Options to create an etcd cluster."""

    etcd_chart_version: str = ""
    use_greptime_cn_artifacts: bool = False
    values_file: str = ""

    etcd_cluster_size: str = _helm("replicaCount")
    image_registry: str = _helm("image.registry")
    etcd_storage_class_name: str = _helm("persistence.storageClass")
    etcd_storage_size: str = _helm("persistence.size")
    config_values: str = _helm("*")


@dataclass
class CreateOptions:
    namespace: str = ""
    name: str = ""
    cluster: Optional[CreateClusterOptions] = None
    operator: Optional[CreateOperatorOptions] = None
    etcd: Optional[CreateEtcdOptions] = None
    spinner: Optional[_Spinner] = None


@dataclass
class ConnectOptions:
    namespace: str = ""
    name: str = ""
    protocol: ConnectProtocol = ConnectProtocol.MYSQL