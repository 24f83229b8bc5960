from dataclasses import fields

import pytest

from gtctl.cluster_types import (
    ComponentKind,
    ConnectOptions,
    ConnectProtocol,
    CreateClusterOptions,
    CreateEtcdOptions,
    CreateOperatorOptions,
    CreateOptions,
    DeleteOptions,
    GetOptions,
    ListOptions,
    ScaleOptions,
)


def _helm_values(options):
    return {f.metadata["helm"]: getattr(options, f.name) for f in fields(options) if "helm" in f.metadata}


@pytest.mark.parametrize(
    "value, expected",
    [
        ("mysql", ConnectProtocol.MYSQL),
        ("pg", ConnectProtocol.POSTGRES),
        ("psql", ConnectProtocol.POSTGRES),
        ("postgres", ConnectProtocol.POSTGRES),
    ],
)
def test_parse_protocol(value, expected):
    assert ConnectProtocol.parse(value) is expected


def test_parse_unsupported_protocol():
    with pytest.raises(ValueError, match="unsupported connection protocol: oracle"):
        ConnectProtocol.parse("oracle")


def test_component_kind_from_string():
    assert ComponentKind("frontend") is ComponentKind.FRONTEND
    assert ComponentKind("datanode") is ComponentKind.DATANODE
    assert ComponentKind("meta") is ComponentKind.META
    with pytest.raises(ValueError):
        ComponentKind("etcd")


def test_connect_options_default_protocol_is_mysql():
    assert ConnectOptions(name="c").protocol is ConnectProtocol.MYSQL


def test_list_options_extend_get_options():
    options = ListOptions(namespace="ns")
    assert isinstance(options, GetOptions)
    assert (options.namespace, options.name, options.output) == ("ns", "", None)


def test_cluster_helm_keys():
    options = CreateClusterOptions(
        image_registry="reg",
        initializer_image_registry="init-reg",
        datanode_storage_class_name="standard",
        datanode_storage_size="10Gi",
        datanode_storage_retain_policy="Retain",
        etcd_endpoints="c1-etcd.default:2379",
        config_values="a=b,",
    )
    assert _helm_values(options) == {
        "image.registry": "reg",
        "initializer.registry": "init-reg",
        "datanode.storage.storageClassName": "standard",
        "datanode.storage.storageSize": "10Gi",
        "datanode.storage.storageRetainPolicy": "Retain",
        "meta.etcdEndpoints": "c1-etcd.default:2379",
        "*": "a=b,",
    }


def test_operator_and_etcd_helm_keys():
    operator = CreateOperatorOptions(image_registry="reg", config_values="x=y,")
    assert _helm_values(operator) == {"image.registry": "reg", "*": "x=y,"}
    etcd = CreateEtcdOptions(
        etcd_cluster_size="3",
        image_registry="reg",
        etcd_storage_class_name="standard",
        etcd_storage_size="5Gi",
        config_values="k=v,",
    )
    assert _helm_values(etcd) == {
        "replicaCount": "3",
        "image.registry": "reg",
        "persistence.storageClass": "standard",
        "persistence.size": "5Gi",
        "*": "k=v,",
    }


def test_config_values_accumulate_per_instance():
    first, second = CreateEtcdOptions(), CreateEtcdOptions()
    first.config_values += "auth.rbac.create=false,"
    assert first.config_values == "auth.rbac.create=false,"
    assert second.config_values == ""


def test_create_options_hold_sub_options():
    cluster = CreateClusterOptions(image_registry="registry.example.com")
    options = CreateOptions(namespace="default", name="mycluster", cluster=cluster)
    assert options.cluster.image_registry == "registry.example.com"
    assert options.operator is None and options.etcd is None and options.spinner is None


def test_scale_and_delete_defaults():
    scale = ScaleOptions(name="c", new_replicas=3, component_type=ComponentKind.DATANODE)
    assert (scale.new_replicas, scale.old_replicas) == (3, 0)
    assert DeleteOptions(name="c").tear_down_etcd is False