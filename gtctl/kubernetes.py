"""GreptimeDB cluster operations on Kubernetes.

The chart renderer, the Kubernetes client and the database connector are
supplied by the caller. They are used through these methods:

* helm loader: ``load_and_render_chart(**load_options)`` returning manifests;
* client: ``apply(manifests)``, ``wait_for_deployment_ready(name, namespace, timeout)``,
  ``wait_for_etcd_ready(name, namespace, timeout)``,
  ``wait_for_cluster_ready(name, namespace, timeout)``,
  ``get_cluster(name, namespace)``, ``list_clusters()``,
  ``update_cluster(namespace, cluster)``, ``delete_cluster(name, namespace)``,
  ``delete_etcd_cluster(name, namespace)``;
* connector: ``mysql(port, name)`` and ``postgres(port, name)``.

Clusters are GreptimeDBCluster resources in their JSON form, as dicts. A
client signals a missing resource by raising :class:`NotFoundError`.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Callable, Iterable, Mapping, Optional

from gtctl.artifacts import (
    DEFAULT_ETCD_CHART_VERSION,
    ETCD_CHART_NAME,
    GREPTIMEDB_CLUSTER_CHART_NAME,
    GREPTIMEDB_OPERATOR_CHART_NAME,
)
from gtctl.cluster_types import (
    ComponentKind,
    ConnectOptions,
    ConnectProtocol,
    CreateOptions,
    DeleteOptions,
    GetOptions,
    ListOptions,
    ScaleOptions,
)

ALI_CLOUD_REGISTRY = "greptime-registry.cn-hangzhou.cr.aliyuncs.com"

_DISABLE_RBAC_CONFIG = "auth.rbac.create=false,auth.rbac.token.enabled=false,"

_SPEC_KEYS = {
    ComponentKind.FRONTEND: "frontend",
    ComponentKind.DATANODE: "datanode",
    ComponentKind.META: "meta",
}


class NotFoundError(LookupError):
    """A requested Kubernetes resource does not exist."""


def etcd_cluster_name(cluster_name: str) -> str:
    """Return the name of the etcd cluster that belongs to a GreptimeDB cluster."""
    return f"{cluster_name}-etcd"


def operator_name() -> str:
    """Return the release name of the GreptimeDB operator."""
    return "greptimedb-operator"


def _metadata(cluster: Mapping[str, Any]) -> Mapping[str, Any]:
    return cluster.get("metadata") or {}


def _format_header(text: str) -> str:
    return text.replace("_", " ").replace(".", " ").upper()


def render_list_view(clusters: Iterable[Mapping[str, Any]]) -> str:
    """Render clusters as a borderless, tab-padded table."""
    rows = [["Name", "Namespace", "Creation Date"]]
    rows[0] = [_format_header(h) for h in rows[0]]
    for cluster in clusters:
        meta = _metadata(cluster)
        rows.append([
            str(meta.get("name", "")),
            str(meta.get("namespace", "")),
            str(meta.get("creationTimestamp", "")),
        ])

    widths = [max(len(row[col]) for row in rows) for col in range(len(rows[0]))]
    lines = ("".join(cell.ljust(width) + "\t" for cell, width in zip(row, widths)) for row in rows)
    return "".join(line + "\n" for line in lines)


class KubernetesCluster:
    """Creates, inspects, scales and removes GreptimeDB clusters in Kubernetes."""

    def __init__(
        self,
        helm_loader: Any,
        client: Any = None,
        *,
        logger: Optional[logging.Logger] = None,
        connector: Any = None,
        timeout: Optional[float] = None,
        dry_run: bool = False,
    ) -> None:
        if client is None and not dry_run:
            raise ValueError("a kubernetes client is required unless dry_run is set")
        self._helm_loader = helm_loader
        self._client = client if not dry_run else None
        self._log = logger or logging.getLogger(__name__)
        self._connector = connector
        self.timeout = timeout
        self.dry_run = dry_run

    # Create.

    def create(self, options: CreateOptions) -> None:
        """Install the operator, the etcd cluster and the GreptimeDB cluster in turn."""
        steps: list[tuple[str, Callable[[CreateOptions], None]]] = [
            ("GreptimeDB Operator", self._create_operator),
            ("Etcd cluster", self._create_etcd_cluster),
            ("GreptimeDB cluster", self._create_cluster),
        ]
        for target, step in steps:
            self._with_spinner(options, target, step)

    def _with_spinner(self, options: CreateOptions, target: str,
                      step: Callable[[CreateOptions], None]) -> None:
        spinner = options.spinner
        if not self.dry_run and spinner is not None:
            spinner.start(f"Installing {target}...")
        try:
            step(options)
        except Exception:
            if spinner is not None:
                spinner.stop(False, f"Installing {target} failed")
            raise
        if not self.dry_run and spinner is not None:
            spinner.stop(True, f"Installing {target} successfully 🎉")

    def _render(self, **load_options: Any) -> Any:
        return self._helm_loader.load_and_render_chart(enable_cache=True, **load_options)

    def _print_manifests(self, manifests: Any) -> None:
        text = manifests.decode() if isinstance(manifests, (bytes, bytearray)) else str(manifests)
        self._log.info("%s", text)

    def _create_operator(self, options: CreateOptions) -> None:
        operator_opt = options.operator
        if operator_opt is None:
            raise ValueError("missing create greptimedb operator options")
        name, namespace = operator_name(), options.namespace

        if operator_opt.use_greptime_cn_artifacts and not operator_opt.image_registry:
            operator_opt.config_values += f"image.registry={ALI_CLOUD_REGISTRY},"

        manifests = self._render(
            release_name=name,
            namespace=namespace,
            chart_name=GREPTIMEDB_OPERATOR_CHART_NAME,
            chart_version=operator_opt.greptimedb_operator_chart_version,
            from_cn_region=operator_opt.use_greptime_cn_artifacts,
            values_options=operator_opt,
            values_file=operator_opt.values_file,
        )
        if self.dry_run:
            self._print_manifests(manifests)
            return

        self._client.apply(manifests)
        self._client.wait_for_deployment_ready(name, namespace, self.timeout)

    def _create_cluster(self, options: CreateOptions) -> None:
        cluster_opt = options.cluster
        if cluster_opt is None:
            raise ValueError("missing create greptimedb cluster options")
        name, namespace = options.name, options.namespace

        if cluster_opt.use_greptime_cn_artifacts and not cluster_opt.image_registry:
            cluster_opt.config_values += (
                f"image.registry={ALI_CLOUD_REGISTRY},initializer.registry={ALI_CLOUD_REGISTRY},"
            )

        manifests = self._render(
            release_name=name,
            namespace=namespace,
            chart_name=GREPTIMEDB_CLUSTER_CHART_NAME,
            chart_version=cluster_opt.greptimedb_chart_version,
            from_cn_region=cluster_opt.use_greptime_cn_artifacts,
            values_options=cluster_opt,
            values_file=cluster_opt.values_file,
        )
        if self.dry_run:
            self._print_manifests(manifests)
            return

        self._client.apply(manifests)
        self._client.wait_for_cluster_ready(name, namespace, self.timeout)

    def _create_etcd_cluster(self, options: CreateOptions) -> None:
        etcd_opt = options.etcd
        if etcd_opt is None:
            raise ValueError("missing create etcd cluster options")
        name, namespace = etcd_cluster_name(options.name), options.namespace

        etcd_opt.config_values += _DISABLE_RBAC_CONFIG
        if etcd_opt.use_greptime_cn_artifacts and not etcd_opt.image_registry:
            etcd_opt.config_values += f"image.registry={ALI_CLOUD_REGISTRY},"

        try:
            manifests = self._render(
                release_name=name,
                namespace=namespace,
                chart_name=ETCD_CHART_NAME,
                chart_version=DEFAULT_ETCD_CHART_VERSION,
                from_cn_region=etcd_opt.use_greptime_cn_artifacts,
                values_options=etcd_opt,
                values_file=etcd_opt.values_file,
            )
        except Exception as exc:
            raise RuntimeError(f"error while loading helm chart: {exc}") from exc

        if self.dry_run:
            self._print_manifests(manifests)
            return

        try:
            self._client.apply(manifests)
        except Exception as exc:
            raise RuntimeError(f"error while applying helm chart: {exc}") from exc

        self._client.wait_for_etcd_ready(name, namespace, self.timeout)

    # Get, list and scale.

    def _get(self, name: str, namespace: str) -> Optional[dict]:
        return self._client.get_cluster(name, namespace)

    def get(self, options: GetOptions) -> dict:
        """Report a running cluster and return its resource."""
        try:
            cluster = self._get(options.name, options.namespace)
        except NotFoundError:
            cluster = None
        if cluster is None:
            raise NotFoundError("cluster not found")

        self._log.info(
            "Cluster '%s' in '%s' namespace is running, create at %s\n",
            options.name, options.namespace, _metadata(cluster).get("creationTimestamp"),
        )
        return cluster

    def list(self, options: ListOptions) -> list:
        """Render all clusters as a table and return them."""
        try:
            clusters = self._client.list_clusters()
        except NotFoundError:
            clusters = None
        if clusters is None:
            raise NotFoundError("clusters not found")

        if isinstance(clusters, Mapping):
            clusters = clusters.get("items") or []
        clusters = list(clusters)

        out = options.output if options.output is not None else sys.stdout
        out.write(render_list_view(clusters))
        return clusters

    def scale(self, options: ScaleOptions) -> None:
        """Change the replicas of one component and wait for the cluster to settle."""
        cluster = self._get(options.name, options.namespace)
        if cluster is None:
            raise NotFoundError("cluster not found")

        key = _SPEC_KEYS.get(ComponentKind(options.component_type)) if options.component_type else None
        if key is not None:
            component = cluster.setdefault("spec", {}).setdefault(key, {})
            options.old_replicas = component.get("replicas", 0)
            component["replicas"] = options.new_replicas

        self._log.info(
            "Scaling cluster %s in %s from %d to %d\n",
            options.name, options.namespace, options.old_replicas, options.new_replicas,
        )

        self._client.update_cluster(options.namespace, cluster)
        self._client.wait_for_cluster_ready(options.name, options.namespace, self.timeout)

    # Delete.

    def delete(self, options: DeleteOptions) -> None:
        """Delete a cluster and, if asked, its etcd cluster."""
        try:
            cluster = self._get(options.name, options.namespace)
        except NotFoundError:
            cluster = None
        if cluster is None:
            self._log.info("Cluster '%s' in '%s' not found", options.name, options.namespace)
            return

        self._log.info("Deleting cluster '%s' in namespace '%s'...", options.name, options.namespace)
        self._client.delete_cluster(options.name, options.namespace)
        self._log.info("Cluster '%s' in namespace '%s' is deleted!", options.name, options.namespace)

        if options.tear_down_etcd:
            self._log.info("Deleting etcd cluster in namespace '%s'...", options.namespace)
            self._client.delete_etcd_cluster(etcd_cluster_name(options.name), options.namespace)
            self._log.info("Etcd cluster in namespace '%s' is deleted!", options.namespace)

    # Connect.

    def connect(self, options: ConnectOptions) -> None:
        """Open a database session to a cluster over the chosen protocol."""
        try:
            cluster = self._get(options.name, options.namespace)
        except NotFoundError:
            self._log.info("cluster %s in %s not found", options.name, options.namespace)
            return
        if cluster is None:
            self._log.info("cluster %s in %s not found", options.name, options.namespace)
            return
        if self._connector is None:
            raise ValueError("no database connector configured")

        spec = cluster.get("spec") or {}
        name = _metadata(cluster).get("name", options.name)
        protocol = options.protocol
        if protocol == ConnectProtocol.MYSQL:
            try:
                self._connector.mysql(str(int(spec.get("mysqlServicePort", 0))), name)
            except Exception as exc:
                raise RuntimeError(f"error connecting to mysql: {exc}") from exc
        elif protocol == ConnectProtocol.POSTGRES:
            try:
                self._connector.postgres(str(int(spec.get("postgresServicePort", 0))), name)
            except Exception as exc:
                raise RuntimeError(f"error connecting to postgres: {exc}") from exc
        else:
            raise ValueError("unsupported connect protocol type")