# gtctl

A library for managing GreptimeDB clusters. It can run them in Kubernetes
through Helm charts, or on a single machine ("bare metal") from downloaded
release binaries.

## Modules

### `gtctl.artifacts`

This module finds where a Helm chart or a binary (`greptime`, `etcd`) is
published and downloads it.

- `Manager.new_source(name, version, typ, from_cn_region)` builds a `Source`
  with a file name and a download URL. A version of `latest`, or an empty
  version, is first resolved to a concrete version. For charts the version comes
  from the chart index. For binaries it comes from the latest GitHub release.
  With `from_cn_region` it comes from the `latest-version.txt` file in the CN
  release bucket.
- `Manager.download_to(source, dest_dir, options)` downloads over HTTP. The
  etcd chart is pulled from its OCI registry instead. The method returns the
  path of the artifact.
  - If `DownloadOptions.enable_cache` is set and the file already exists, the
    download is skipped.
  - For binaries, the archive is unpacked. Its executables are moved into
    `DownloadOptions.binary_install_dir`, and the method returns
    `<parent of dest_dir>/bin/<name>`. It raises `ValueError` when no install
    directory is given.
- `ArtifactType` is either `CHART` or `BINARY`.
- The module also provides these helpers:
  - `chart_file_name`
  - `latest_chart_version`, which reads a sorted index mapping and raises
    `LookupError`
  - `etcd_binary_download_url`
  - `greptime_binary_download_url`
  - `is_breaking_version`, which tells whether a greptime version uses the
    versioned package names

### `gtctl.cluster_types`

This module holds the option dataclasses passed to cluster operations:

- `CreateOptions`, which holds `CreateClusterOptions`, `CreateOperatorOptions`,
  `CreateEtcdOptions` and an optional spinner with `start`/`stop`
- `DeleteOptions`
- `GetOptions`
- `ListOptions`
- `ScaleOptions`
- `ConnectOptions`

It also holds two enumerations:

- `ComponentKind`, which is `frontend`, `datanode` or `meta`.
- `ConnectProtocol`. `ConnectProtocol.parse` accepts `mysql`, or `pg`, `psql`
  and `postgres`. Any other name raises `ValueError`.

### `gtctl.kubernetes`

`KubernetesCluster(helm_loader, client, *, logger, connector, timeout, dry_run)`
works through objects that the caller supplies:

- a Helm loader with `load_and_render_chart(...)`
- a Kubernetes client with methods such as `apply`, `get_cluster`,
  `list_clusters`, `update_cluster`, `delete_cluster` and the `wait_for_*_ready`
  methods
- optionally, a connector with `mysql(port, name)` and `postgres(port, name)`

Clusters are plain dicts in the GreptimeDBCluster resource form.

- `create` installs, in order, the operator, an etcd cluster and the
  GreptimeDB cluster. With `dry_run`, it only logs the rendered manifests.
- `get` and `list` raise `NotFoundError` when nothing is found. `list` writes
  a table produced by `render_list_view`.
- `scale` changes one component's replicas and records the old value in
  `options.old_replicas`.
- `delete` logs and returns quietly when the cluster is missing. It also
  removes the etcd cluster when `tear_down_etcd` is set.
- `connect` hands the service port to the connector.

The module also provides `etcd_cluster_name` and `operator_name`.

### `gtctl.baremetal`

`BareMetalCluster(base_dir, config_path, *, logs_dir, logger)` reads a cluster's
YAML metadata file.

- `get` prints a table of the components and their pids, logs the footers and
  returns the metadata.
- `delete` removes the base directory. If the recorded foreground process is
  still running, it raises `RuntimeError` instead.
- `list`, `scale` and `connect` raise `UnsupportedOperationError`.

The module also provides these helpers:

- `collect_pids`
- `collect_cluster_info`
- `has_etcd_leader`, which parses `etcdctl endpoint status` output
- `is_process_running`

## Examples

```python
from gtctl.artifacts import chart_file_name
from gtctl.kubernetes import etcd_cluster_name, operator_name
from gtctl.cluster_types import ConnectProtocol

chart_file_name("etcd", "9.2.0")   # "etcd-9.2.0.tgz"
etcd_cluster_name("mycluster")     # "mycluster-etcd"
operator_name()                    # "greptimedb-operator"
ConnectProtocol.parse("psql")      # ConnectProtocol.POSTGRES
```

`collect_pids` reads a directory that has one sub-directory per component,
each holding a `pid` file. It returns each file's content keyed by the
sub-directory name:

```python
from gtctl.baremetal import collect_pids

pids = collect_pids("/path/to/cluster/pids")
```

## What it does not do

- There is no command-line program. The package is a library only.
- It does not render Helm charts, talk to the Kubernetes API or open database
  sessions by itself. `KubernetesCluster` delegates all of these to the objects
  it is given.
- `BareMetalCluster` does not create clusters. It does not download binaries
  for them or start their processes either. It only inspects and deletes
  clusters whose metadata already exists.

## Requirements

Python 3.10 or later, with PyYAML and semver.