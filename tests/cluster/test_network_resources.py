# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import pytest

from k3forge.cloud.provisioner import ResourceProvisioner
from k3forge.cluster.network_resources import FALLBACK_CIDR, NetworkResourceManager, safe_cidr
from k3forge.errors import ConfigError, ReadinessTimeoutError


@pytest.fixture
def provisioner(cloud):
    return ResourceProvisioner(cloud)


def _network(provisioner):
    return provisioner.ensure_network("demo", "10.0.0.0/16", "eu-central", {})


LB_ENABLED = {"load_balancer": {"enabled": True}}


# ----------------- API load balancer -----------------


def test_api_load_balancer_is_optional(make_spec, provisioner, cloud):
    assert NetworkResourceManager(make_spec(), provisioner).create_api_load_balancer("fsn1", None) is None
    assert not cloud.load_balancers


def test_api_load_balancer_private(make_spec, provisioner, cloud):
    spec = make_spec(create_load_balancer_for_the_kubernetes_api=True)
    network = _network(provisioner)

    lb = NetworkResourceManager(spec, provisioner).create_api_load_balancer("fsn1", network)

    assert lb.name == "demo-api-lb"
    assert lb.private_ip is not None
    assert lb.labels == {"cluster": "demo", "role": "api-lb", "managed": "k3forge"}
    (svc,) = lb.services
    assert (svc.protocol, svc.listen_port, svc.destination_port) == ("tcp", 6443, 6443)
    assert (svc.health_check.interval, svc.health_check.timeout, svc.health_check.retries) == (15, 10, 3)
    (target,) = cloud.get_load_balancer("demo-api-lb").targets
    assert target.label_selector == "role=master,cluster=demo"
    assert target.use_private_ip is True


def test_api_load_balancer_public_only(make_spec, provisioner, cloud):
    spec = make_spec(
        create_load_balancer_for_the_kubernetes_api=True,
        networking={"private_network": {"enabled": False}},
    )
    NetworkResourceManager(spec, provisioner).create_api_load_balancer("fsn1", None)

    assert not cloud.calls_to("attach_load_balancer_to_network")
    (target,) = cloud.get_load_balancer("demo-api-lb").targets
    assert target.use_private_ip is False


def test_attachment_that_never_shows_up(make_spec, provisioner, cloud):
    spec = make_spec(create_load_balancer_for_the_kubernetes_api=True)
    network = _network(provisioner)
    # the attach action succeeds but the load balancer never reports the network
    cloud.attach_load_balancer_to_network = lambda lb_id, network_id: cloud._done("attach_to_network")

    with pytest.raises(ReadinessTimeoutError, match="demo-api-lb"):
        NetworkResourceManager(spec, provisioner).create_api_load_balancer("fsn1", network)
    assert len(cloud.calls_to("get_load_balancer")) >= 5


# ----------------- firewall -----------------


def test_safe_cidr_falls_back_to_loopback():
    assert safe_cidr("192.168.1.7/24") == "192.168.1.0/24"
    assert safe_cidr("not-a-cidr") == FALLBACK_CIDR


def test_firewall_rules(make_spec, provisioner, cloud):
    spec = make_spec(
        networking={"ssh": {"port": 2222}, "allowed_networks": {"ssh": ["198.51.100.0/24"], "api": ["0.0.0.0/0"]}}
    )
    firewall = NetworkResourceManager(spec, provisioner).create_firewall()

    assert firewall.name == "demo-firewall"
    assert firewall.label_selector == "cluster=demo"
    by_desc = {r.description: r for r in firewall.rules}
    assert by_desc["SSH access"].port == "2222"
    assert by_desc["SSH access"].source_ips == ("198.51.100.0/24",)
    assert by_desc["Kubernetes API access"].port == "6443"
    assert by_desc["Allow all TCP within cluster network"].source_ips == ("10.0.0.0/16",)
    assert by_desc["Allow ICMP within cluster network"].port is None


def test_firewall_skipped_in_local_firewall_mode(make_spec, provisioner, cloud):
    spec = make_spec(
        networking={"private_network": {"enabled": False}, "public_network": {"use_local_firewall": True}}
    )
    assert NetworkResourceManager(spec, provisioner).create_firewall() is None
    assert not cloud.firewalls


def test_firewall_without_private_network_has_no_internal_rules(make_spec, provisioner):
    spec = make_spec(networking={"private_network": {"enabled": False}})
    rules = NetworkResourceManager(spec, provisioner).firewall_rules()
    assert {r.description for r in rules} == {"SSH access", "Kubernetes API access"}


# ----------------- global load balancer -----------------


def test_global_load_balancer_disabled(make_spec, provisioner):
    assert NetworkResourceManager(make_spec(), provisioner).create_global_load_balancer(None, "fsn1") is None


def test_global_load_balancer_defaults_to_worker_targets(make_spec, provisioner, cloud):
    spec = make_spec(**LB_ENABLED)
    lb = NetworkResourceManager(spec, provisioner).create_global_load_balancer(None, "nbg1")

    assert lb.name == "demo-global-lb"
    assert cloud.calls_to("create_load_balancer")[0][3] == "nbg1"
    assert sorted(s.listen_port for s in lb.services) == [80, 443]
    (target,) = cloud.get_load_balancer("demo-global-lb").targets
    assert target.label_selector == "role=worker,cluster=demo"
    assert target.use_private_ip is False


def test_global_load_balancer_pools_and_private_targets(make_spec, provisioner, cloud):
    spec = make_spec(
        worker_node_pools=[{"name": "web", "instance_type": "cpx21"}, {"name": "api", "instance_type": "cpx21"}],
        load_balancer={
            "enabled": True,
            "name": "edge",
            "location": "hel1",
            "target_pools": ["web", "api"],
            "attach_to_network": True,
        },
    )
    network = _network(provisioner)
    NetworkResourceManager(spec, provisioner).create_global_load_balancer(network, "fsn1")

    assert cloud.calls_to("create_load_balancer")[0][1:3] == ("edge", "lb11")
    assert cloud.calls_to("create_load_balancer")[0][3] == "hel1"
    lb = cloud.get_load_balancer("edge")
    assert lb.private_ip is not None
    assert [(t.label_selector, t.use_private_ip) for t in lb.targets] == [("pool=web", True), ("pool=api", True)]


def test_global_load_balancer_attaches_certificate_to_https(make_spec, provisioner, cloud):
    spec = make_spec(**LB_ENABLED)
    cert = provisioner.ensure_managed_certificate("example.com", ["example.com"], {})
    lb = NetworkResourceManager(spec, provisioner).create_global_load_balancer(None, "fsn1", cert)

    # the default services are plain tcp, so nothing carries the certificate
    assert all(s.certificate_ids == () for s in lb.services)

    https = make_spec(
        load_balancer={
            "enabled": True,
            "name": "secure",
            "services": [{"protocol": "https", "listen_port": 443, "destination_port": 80}],
        }
    )
    lb = NetworkResourceManager(https, provisioner).create_global_load_balancer(None, "fsn1", cert)
    assert lb.services[0].certificate_ids == (cert.id,)


# ----------------- DNS / certificate -----------------

CERT_READY = {
    "domain": "example.com",
    "dns_zone": {"enabled": True},
    "ssl_certificate": {"enabled": True},
    "load_balancer": {
        "enabled": True,
        "services": [{"protocol": "https", "listen_port": 443, "destination_port": 80}],
    },
}


def test_dns_zone_and_certificate(make_spec, provisioner, cloud):
    mgr = NetworkResourceManager(make_spec(**CERT_READY), provisioner)

    zone = mgr.create_dns_zone()
    cert = mgr.create_certificate()

    assert zone.name == "example.com"
    assert cert.name == "example.com"
    assert cert.domain_names == ("example.com", "*.example.com")


def test_certificate_requires_https_service(make_spec, provisioner):
    spec = make_spec(**{**CERT_READY, "load_balancer": {"enabled": True}})
    with pytest.raises(ConfigError, match="https service"):
        NetworkResourceManager(spec, provisioner).create_certificate()


def test_dns_and_certificate_disabled(make_spec, provisioner, cloud):
    mgr = NetworkResourceManager(make_spec(), provisioner)
    assert mgr.create_dns_zone() is None
    assert mgr.create_certificate() is None
    assert not cloud.zones and not cloud.certificates
