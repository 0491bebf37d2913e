# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import itertools

import pytest

from k3forge.cloud.models import LoadBalancer, PrivateNet, Server
from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.cluster.helpers import (
    NODE_GROUP_LABEL,
    build_tls_sans,
    cluster_ip,
    discover_cluster_servers,
    master_name,
    merge_servers,
    resolve_private_targeting,
    split_by_role,
    worker_labels,
    worker_name,
)
from k3forge.errors import K3ForgeError


def _server(id_, name, public=None, private=None, **labels):
    return Server(
        id=id_,
        name=name,
        status="running",
        labels=labels,
        public_ipv4=public,
        private_net=(PrivateNet(1, private),) if private else (),
    )


# ----------------- TLS SANs -----------------


def test_tls_sans_single_public_master(make_spec):
    spec = make_spec(networking={"private_network": {"enabled": False}})
    master = _server(1, "demo-master-1", public="46.224.204.161")

    assert build_tls_sans(spec, [master], master) == "--tls-san=127.0.0.1 --tls-san=46.224.204.161"


def test_tls_sans_are_deduplicated_sorted_and_complete(make_spec):
    spec = make_spec(api_server_hostname="api.example.com")
    masters = [
        _server(1, "demo-master-1", public="203.0.113.1", private="10.0.0.2"),
        _server(2, "demo-master-2", public="203.0.113.2", private="10.0.0.3"),
    ]
    lb = LoadBalancer(id=9, name="demo-api-lb", public_ipv4="198.51.100.9")

    sans = build_tls_sans(spec, masters, masters[0], lb).split()

    assert sans == sorted(sans)
    assert len(sans) == len(set(sans))
    assert set(sans) == {
        "--tls-san=10.0.0.2",
        "--tls-san=10.0.0.3",
        "--tls-san=127.0.0.1",
        "--tls-san=198.51.100.9",
        "--tls-san=203.0.113.1",
        "--tls-san=203.0.113.2",
        "--tls-san=api.example.com",
    }


def test_tls_sans_are_deterministic(make_spec):
    spec = make_spec()
    masters = [
        _server(2, "demo-master-2", public="203.0.113.2", private="10.0.0.3"),
        _server(1, "demo-master-1", public="203.0.113.1", private="10.0.0.2"),
    ]
    assert build_tls_sans(spec, masters, masters[1]) == build_tls_sans(spec, list(reversed(masters)), masters[1])


# ----------------- private targeting -----------------


@pytest.mark.parametrize(
    "attach_requested,private_enabled,network_present,use_private_ip",
    list(itertools.product([True, False], [True, False], [True, False], [None, True, False])),
)
def test_private_ip_never_without_attachment(attach_requested, private_enabled, network_present, use_private_ip):
    attach, use_private = resolve_private_targeting(
        attach_requested=attach_requested,
        private_network_enabled=private_enabled,
        network_present=network_present,
        use_private_ip=use_private_ip,
    )
    assert not (use_private and not attach)
    assert attach == (attach_requested and private_enabled and network_present)


def test_private_targeting_defaults_to_attachment():
    assert resolve_private_targeting(
        attach_requested=True, private_network_enabled=True, network_present=True
    ) == (True, True)
    assert resolve_private_targeting(
        attach_requested=True, private_network_enabled=True, network_present=True, use_private_ip=False
    ) == (True, False)


# ----------------- names / addresses -----------------


def test_names(make_spec):
    spec = make_spec(
        worker_node_pools=[
            {"name": "small", "instance_type": "cpx11"},
            {"name": "edge", "instance_type": "cpx11", "include_cluster_name_as_prefix": False},
        ]
    )
    small, edge = spec.worker_node_pools
    assert master_name("demo", 0) == "demo-master-1"
    assert worker_name("demo", small, 1) == "demo-worker-small-2"
    assert worker_name("demo", edge, 0) == "demo-worker-edge-1"
    assert edge.node_group_name("demo") == "edge"


def test_cluster_ip_prefers_private_when_network_enabled(make_spec):
    server = _server(1, "demo-master-1", public="203.0.113.1", private="10.0.0.2")
    assert cluster_ip(server, make_spec()) == "10.0.0.2"
    assert cluster_ip(server, make_spec(networking={"private_network": {"enabled": False}})) == "203.0.113.1"


def test_cluster_ip_without_any_address(make_spec):
    with pytest.raises(K3ForgeError, match="no accessible IP"):
        cluster_ip(_server(1, "demo-master-1"), make_spec())


# ----------------- discovery -----------------


def test_merge_servers_deduplicates_by_id():
    a = _server(1, "demo-master-1")
    b = _server(2, "demo-pool-abc")
    assert merge_servers([a, b], [b], [a]) == [a, b]


def test_discovery_includes_autoscaled_nodes_once(make_spec, cloud):
    spec = make_spec(
        worker_node_pools=[
            {"name": "auto", "instance_type": "cpx21", "autoscaling": {"enabled": True, "min_instances": 0, "max_instances": 3}},
        ]
    )
    cloud.add_server("demo-master-1", {"cluster": "demo", "role": "master"})
    # labelled by both families
    cloud.add_server("demo-auto-1", {"cluster": "demo", NODE_GROUP_LABEL: "demo-auto"})
    # created by the autoscaler, node-group label only
    cloud.add_server("demo-auto-7f3a", {NODE_GROUP_LABEL: "demo-auto"})
    cloud.add_server("other-master-1", {"cluster": "other", "role": "master"})

    servers = discover_cluster_servers(ResourceProvisioner(cloud), spec)

    assert sorted(s.name for s in servers) == ["demo-auto-1", "demo-auto-7f3a", "demo-master-1"]


def test_discovery_ignores_other_clusters_sharing_a_node_group(make_spec, cloud):
    edge = {"name": "edge", "instance_type": "cpx21", "include_cluster_name_as_prefix": False}
    alpha = make_spec(cluster_name="alpha", worker_node_pools=[edge])
    beta = make_spec(
        cluster_name="beta",
        worker_node_pools=[{**edge, "autoscaling": {"enabled": True, "min_instances": 0, "max_instances": 2}}],
    )
    (alpha_pool,) = alpha.worker_node_pools
    cloud.add_server(worker_name("alpha", alpha_pool, 0), worker_labels("alpha", alpha_pool))
    cloud.add_server("alpha-edge-misfit", {"cluster": "alpha", NODE_GROUP_LABEL: "edge"})
    cloud.add_server("edge-5d2c", {NODE_GROUP_LABEL: "edge"})

    servers = discover_cluster_servers(ResourceProvisioner(cloud), beta)

    assert [s.name for s in servers] == ["edge-5d2c"]
    assert NODE_GROUP_LABEL not in worker_labels("alpha", alpha_pool)


def test_split_by_role():
    servers = [
        _server(3, "demo-master-2", role="master"),
        _server(1, "demo-master-1", role="master"),
        _server(2, "demo-worker-small-1", role="worker"),
        _server(4, "demo-auto-x", **{NODE_GROUP_LABEL: "demo-auto"}),
        _server(5, "demo-nat-gateway", role="nat-gateway"),
    ]
    masters, workers = split_by_role(servers)
    assert [m.name for m in masters] == ["demo-master-1", "demo-master-2"]
    assert [w.name for w in workers] == ["demo-worker-small-1", "demo-auto-x"]
