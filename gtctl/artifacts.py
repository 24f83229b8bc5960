"""Locating, downloading and installing helm charts and binaries."""

from __future__ import annotations

import enum
import json
import logging
import os
import platform
import posixpath
import re
import shutil
import stat
import tarfile
import tempfile
import urllib.error
import urllib.parse
import urllib.request
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import semver
import yaml

GREPTIME_CHART_INDEX_URL = "https://raw.githubusercontent.com/GreptimeTeam/helm-charts/gh-pages/index.yaml"
GREPTIME_CHART_RELEASE_DOWNLOAD_URL = "https://github.com/GreptimeTeam/helm-charts/releases/download"
GREPTIME_RELEASE_BUCKET_CN = "https://downloads.greptime.cn/releases"
GREPTIME_CN_CHARTS = GREPTIME_RELEASE_BUCKET_CN + "/charts"
GREPTIMEDB_CN_BINARIES = GREPTIME_RELEASE_BUCKET_CN + "/greptimedb"
ETCD_CN_BINARIES = GREPTIME_RELEASE_BUCKET_CN + "/etcd"
LATEST_VERSION_TAG = "latest"
ETCD_OCI_REGISTRY = "oci://registry-1.docker.io/bitnamicharts/etcd"
GREPTIME_GITHUB_ORG = "GreptimeTeam"
GREPTIMEDB_GITHUB_REPO = "greptimedb"
ETCD_GITHUB_ORG = "etcd-io"
ETCD_GITHUB_REPO = "etcd"
GREPTIME_BIN_NAME = "greptime"
ETCD_BIN_NAME = "etcd"
GREPTIMEDB_CLUSTER_CHART_NAME = "greptimedb-cluster"
GREPTIMEDB_OPERATOR_CHART_NAME = "greptimedb-operator"
ETCD_CHART_NAME = "etcd"
DEFAULT_ETCD_CHART_VERSION = "9.2.0"
DEFAULT_ETCD_BIN_VERSION = "v3.5.7"

# The version from which greptime binary packages carry the version in their name.
BREAKING_CHANGE_VERSION = "v0.4.0-nightly-20230802"

TGZ_EXTENSION = ".tgz"
TAR_GZ_EXTENSION = ".tar.gz"
ZIP_EXTENSION = ".zip"

_OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
_HELM_CHART_LAYER_MEDIA_TYPE = "application/vnd.cncf.helm.chart.content.v1.tar+gzip"

_ARCH_NAMES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
}


class ArtifactType(str, enum.Enum):
    """Kind of an artifact."""

    CHART = "chart"
    BINARY = "binary"


@dataclass
class Source:
    """Where an artifact comes from."""

    name: str
    version: str
    type: ArtifactType
    from_cn_region: bool = False
    file_name: str = ""
    url: str = ""


@dataclass
class DownloadOptions:
    """How an artifact is downloaded."""

    enable_cache: bool = False
    binary_install_dir: str | os.PathLike[str] = ""


def _go_os() -> str:
    return platform.system().lower()


def _go_arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_NAMES.get(machine, machine)


def _parse_semver(version: str) -> semver.Version:
    text = version[1:] if version.startswith("v") else version
    return semver.Version.parse(text, optional_minor_and_patch=True)


def chart_file_name(chart_name: str, version: str) -> str:
    """Return the package file name of a chart."""
    return f"{chart_name}-{version}{TGZ_EXTENSION}"


def latest_chart_version(index: Mapping[str, Any], chart_name: str) -> dict:
    """Return the newest entry of a chart in a sorted chart index."""
    entries = index.get("entries") or {}
    if chart_name not in entries:
        raise LookupError(f"chart {chart_name} not found")
    versions = entries[chart_name]
    if not versions:
        raise LookupError(f"chart {chart_name} has empty versions")
    latest = versions[0]
    if not latest.get("urls"):
        raise LookupError(f"no download URLs found for {chart_name}-{latest.get('version')}")
    return latest


def etcd_binary_download_url(version: str, from_cn_region: bool) -> str:
    """Return the download URL of the etcd package for this platform."""
    os_name = _go_os()
    if os_name == "darwin":
        ext = ZIP_EXTENSION
    elif os_name == "linux":
        ext = TAR_GZ_EXTENSION
    else:
        raise ValueError(f"unsupported OS: {os_name}")

    if from_cn_region:
        base = ETCD_CN_BINARIES
    else:
        base = f"https://github.com/{ETCD_GITHUB_ORG}/{ETCD_GITHUB_REPO}/releases/download"
    return f"{base}/{version}/etcd-{version}-{os_name}-{_go_arch()}{ext}"


def greptime_binary_download_url(version: str, from_cn_region: bool) -> str:
    """Return the download URL of the greptime package for this platform."""
    os_name, arch = _go_os(), _go_arch()
    if is_breaking_version(version):
        package = f"greptime-{os_name}-{arch}-{version}{TAR_GZ_EXTENSION}"
    else:
        package = f"greptime-{os_name}-{arch}{TGZ_EXTENSION}"

    if from_cn_region:
        base = GREPTIMEDB_CN_BINARIES
    else:
        base = f"https://github.com/{GREPTIME_GITHUB_ORG}/{GREPTIMEDB_GITHUB_REPO}/releases/download"
    return f"{base}/{version}/{package}"


def is_breaking_version(version: str) -> bool:
    """Tell whether a greptime version uses the versioned package names."""
    newer = _parse_semver(version) > _parse_semver(BREAKING_CHANGE_VERSION)
    return newer or version == BREAKING_CHANGE_VERSION


def _fetch(url: str, headers: Mapping[str, str] | None = None) -> tuple[int, bytes, Any]:
    request = urllib.request.Request(url, headers=dict(headers or {}))
    try:
        with urllib.request.urlopen(request) as response:
            return response.status, response.read(), getattr(response, "headers", {})
    except urllib.error.HTTPError as exc:
        return exc.code, b"", exc.headers or {}


def _uncompress(archive: Path, dest: Path) -> None:
    name = archive.name
    if name.endswith(ZIP_EXTENSION):
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                extracted = zf.extract(info, dest)
                mode = info.external_attr >> 16
                if mode and not info.is_dir():
                    os.chmod(extracted, stat.S_IMODE(mode))
    elif name.endswith(TAR_GZ_EXTENSION) or name.endswith(TGZ_EXTENSION):
        with tarfile.open(archive, "r:gz") as tf:
            if hasattr(tarfile, "data_filter"):
                tf.extractall(dest, filter="data")
            else:
                tf.extractall(dest)
    else:
        raise ValueError(f"unsupported archive format: {name}")


class Manager:
    """Resolves artifact sources and downloads them."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or logging.getLogger(__name__)

    def new_source(self, name: str, version: str, typ: ArtifactType | str, from_cn_region: bool) -> Source:
        """Create the source of an artifact, resolving 'latest' to a concrete version."""
        typ = ArtifactType(typ)
        if not version or version == LATEST_VERSION_TAG:
            version = self._resolve_latest_version(typ, name, from_cn_region)

        src = Source(name=name, version=version, type=typ, from_cn_region=from_cn_region)

        if typ is ArtifactType.CHART:
            src.file_name = chart_file_name(name, version)
            if from_cn_region:
                src.url = f"{GREPTIME_CN_CHARTS}/{name}/{version}/{src.file_name}"
            elif name == ETCD_CHART_NAME:
                src.url = ETCD_OCI_REGISTRY
            else:
                release = src.file_name.removesuffix(TGZ_EXTENSION)
                src.url = f"{GREPTIME_CHART_RELEASE_DOWNLOAD_URL}/{release}/{src.file_name}"
        else:
            if name == ETCD_BIN_NAME:
                src.url = etcd_binary_download_url(version, from_cn_region)
            elif name == GREPTIME_BIN_NAME:
                src.url = greptime_binary_download_url(version, from_cn_region)
            if src.url:
                src.file_name = posixpath.basename(src.url)

        return src

    def download_to(self, source: Source, dest_dir: str | os.PathLike[str],
                    options: DownloadOptions | None = None) -> Path:
        """Download an artifact into dest_dir and return the path of the artifact."""
        options = options or DownloadOptions()
        dest_dir = Path(dest_dir)
        artifact_file = dest_dir / source.file_name

        should_download = True
        if options.enable_cache:
            try:
                os.stat(artifact_file)
            except FileNotFoundError:
                pass
            else:
                self._log.debug("The artifact file '%s' already exists, skip downloading.", artifact_file)
                should_download = False

        if should_download:
            self._log.debug("Downloading artifact from '%s' to '%s'", source.url, dest_dir)
            dest_dir.mkdir(parents=True, exist_ok=True)

            if source.url.startswith("oci://") and source.type is ArtifactType.CHART:
                self._pull_oci_chart(source.url, source.version, dest_dir)
                return artifact_file

            self._download_from_http(source.url, artifact_file)

        if source.type is ArtifactType.BINARY:
            if not options.binary_install_dir:
                raise ValueError("binary install dir is empty")
            self._install_binaries(artifact_file, Path(options.binary_install_dir))
            return dest_dir.parent / "bin" / source.name

        return artifact_file

    def _download_from_http(self, url: str, dest: Path) -> None:
        status, body, _ = _fetch(url)
        if status != 200:
            raise RuntimeError(f"download failed, status code: {status}")
        dest.write_bytes(body)

    def _pull_oci_chart(self, reference: str, version: str, dest_dir: Path) -> None:
        host, _, repository = reference.removeprefix("oci://").partition("/")
        base = f"https://{host}/v2/{repository}"
        self._log.debug("Pulling chart '%s', version: '%s' from OCI registry", reference, version)

        manifest = json.loads(self._registry_get(f"{base}/manifests/{version}", _OCI_MANIFEST_MEDIA_TYPE))
        for layer in manifest.get("layers", []):
            if layer.get("mediaType") == _HELM_CHART_LAYER_MEDIA_TYPE:
                digest = layer["digest"]
                break
        else:
            raise RuntimeError(f"no helm chart layer found in {reference}:{version}")

        blob = self._registry_get(f"{base}/blobs/{digest}", _HELM_CHART_LAYER_MEDIA_TYPE)
        chart = repository.rsplit("/", 1)[-1]
        (dest_dir / chart_file_name(chart, version)).write_bytes(blob)

    def _registry_get(self, url: str, accept: str) -> bytes:
        headers = {"Accept": accept}
        status, body, response_headers = _fetch(url, headers)
        if status == 401:
            challenge = response_headers.get("WWW-Authenticate", "") if response_headers else ""
            headers["Authorization"] = f"Bearer {self._registry_token(challenge)}"
            status, body, _ = _fetch(url, headers)
        if status != 200:
            raise RuntimeError(f"registry request '{url}' failed, status code: {status}")
        return body

    @staticmethod
    def _registry_token(challenge: str) -> str:
        params = dict(re.findall(r'(\w+)="([^"]*)"', challenge))
        realm = params.pop("realm", None)
        if not realm:
            raise RuntimeError(f"unsupported registry authentication challenge: {challenge!r}")
        url = f"{realm}?{urllib.parse.urlencode(params)}" if params else realm
        status, body, _ = _fetch(url)
        if status != 200:
            raise RuntimeError(f"registry token request failed, status code: {status}")
        payload = json.loads(body)
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise RuntimeError("registry token response holds no token")
        return token

    def _chart_index(self, url: str) -> dict:
        status, body, _ = _fetch(url)
        if status != 200:
            raise RuntimeError(f"get chart index from '{url}' failed, status code: {status}")
        if not body:
            raise ValueError("empty index.yaml file")

        index = yaml.safe_load(body) or {}
        entries = {}
        for name, versions in (index.get("entries") or {}).items():
            valid = []
            for chart_version in versions or []:
                if chart_version is None:
                    continue
                if not chart_version.get("apiVersion"):
                    chart_version["apiVersion"] = "v1"
                if self._is_valid_chart_version(chart_version):
                    valid.append(chart_version)
            valid.sort(key=lambda cv: _parse_semver(str(cv["version"])), reverse=True)
            entries[name] = valid
        index["entries"] = entries

        if not index.get("apiVersion"):
            raise ValueError("no API version specified")
        return index

    @staticmethod
    def _is_valid_chart_version(chart_version: Mapping[str, Any]) -> bool:
        if not chart_version.get("name") or not chart_version.get("version"):
            return False
        try:
            _parse_semver(str(chart_version["version"]))
        except ValueError:
            return False
        return True

    @staticmethod
    def _latest_github_release_version(org: str, repo: str) -> str:
        url = f"https://api.github.com/repos/{org}/{repo}/releases/latest"
        status, body, _ = _fetch(url, {"Accept": "application/vnd.github+json"})
        if status != 200:
            raise RuntimeError(f"get latest release from '{url}' failed, status code: {status}")
        return json.loads(body)["tag_name"]

    def _install_binaries(self, download_file: Path, install_dir: Path) -> None:
        install_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="gtctl-") as temp_dir:
            _uncompress(download_file, Path(temp_dir))
            self._log.debug("Installing binaries '%s' to '%s'", download_file, install_dir)
            for root, _dirs, files in os.walk(temp_dir):
                for file_name in sorted(files):
                    path = Path(root, file_name)
                    mode = path.lstat().st_mode
                    if stat.S_ISREG(mode) and mode & 0o111:
                        target = install_dir / file_name
                        if path != target:
                            shutil.move(str(path), str(target))

    def _resolve_latest_version(self, typ: ArtifactType, name: str, from_cn_region: bool) -> str:
        if from_cn_region:
            return self._s3_latest_version(typ, name)
        if typ is ArtifactType.CHART:
            index = self._chart_index(GREPTIME_CHART_INDEX_URL)
            return str(latest_chart_version(index, name)["version"])
        return self._latest_github_release_version(GREPTIME_GITHUB_ORG, GREPTIMEDB_GITHUB_REPO)

    def _s3_latest_version(self, typ: ArtifactType, name: str, nightly: bool = False) -> str:
        # The greptime binary lives under the 'greptimedb' directory.
        if name == GREPTIME_BIN_NAME:
            name = "greptimedb"
        if typ is ArtifactType.CHART:
            url = f"{GREPTIME_RELEASE_BUCKET_CN}/charts/{name}/latest-version.txt"
        elif nightly:
            url = f"{GREPTIME_RELEASE_BUCKET_CN}/{name}/latest-nightly-version.txt"
        else:
            url = f"{GREPTIME_RELEASE_BUCKET_CN}/{name}/latest-version.txt"

        status, body, _ = _fetch(url)
        if status != 200:
            raise RuntimeError(f"get latest info from '{url}' failed, status code: {status}")
        return body.decode().rstrip("\n")