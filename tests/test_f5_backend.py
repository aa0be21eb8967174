"""Tests for the F5 backend against an in-memory BIG-IP."""

from unittest.mock import MagicMock

import pytest

from kube_lb_controller.allocation import MemoryAllocationTable, VirtualIPAllocator
from kube_lb_controller.backend.f5 import F5Backend, format_destination, member_name
from kube_lb_controller.cluster.models import ConfigGroup, Node, NodeAddress, Service, ServicePort
from kube_lb_controller.config import BackendConfig, F5Config
from kube_lb_controller.exceptions import (
    BackendAPIError,
    InvalidGroupError,
    ProvisionError,
    RangeExhausted,
    ResourceConflict,
    ResourceNotFound,
    ValidationError,
)


class FakeBigIP:
    """Just enough of the iControl client to hold state between calls."""

    partition = "Common"

    def __init__(self):
        self.monitors: dict[str, dict] = {}
        self.pools: dict[str, dict] = {}
        self.nodes: dict[str, str] = {}
        self.virtuals: dict[str, dict] = {}
        self.fail: dict[str, Exception] = {}
        self.calls: list[str] = []

    def _check(self, op):
        self.calls.append(op)
        if op in self.fail:
            raise self.fail[op]

    def close(self):
        self.calls.append("close")

    # Monitors
    def get_monitor(self, name):
        return self.monitors.get(name)

    def list_monitors(self):
        return [{"name": n} for n in self.monitors]

    def create_monitor(self, name, interval, timeout):
        self._check("create_monitor")
        if name in self.monitors:
            raise ResourceConflict()
        self.monitors[name] = {"name": name, "interval": interval, "timeout": timeout}

    def delete_monitor(self, name):
        self._check("delete_monitor")
        if name not in self.monitors:
            raise ResourceNotFound()
        del self.monitors[name]

    # Pools
    def get_pool(self, name):
        return self.pools.get(name)

    def list_pools(self):
        return [{"name": n} for n in self.pools]

    def create_pool(self, name, monitor):
        self._check("create_pool")
        if name in self.pools:
            raise ResourceConflict()
        self.pools[name] = {"name": name, "monitor": monitor, "members": set()}

    def delete_pool(self, name):
        self._check("delete_pool")
        if name not in self.pools:
            raise ResourceNotFound()
        del self.pools[name]

    def list_pool_members(self, pool):
        return [{"name": m} for m in sorted(self.pools[pool]["members"])]

    def add_pool_member(self, pool, member):
        self._check("add_pool_member")
        if pool not in self.pools:
            raise ResourceNotFound()
        if member in self.pools[pool]["members"]:
            raise ResourceConflict()
        self.pools[pool]["members"].add(member)

    def delete_pool_member(self, pool, member):
        self._check("delete_pool_member")
        if pool not in self.pools or member not in self.pools[pool]["members"]:
            raise ResourceNotFound()
        self.pools[pool]["members"].discard(member)

    # Nodes
    def get_node(self, name):
        if name not in self.nodes:
            return None
        return {"name": name, "address": self.nodes[name]}

    def create_node(self, name, address):
        self._check("create_node")
        self.nodes[name] = address

    def modify_node(self, name, address):
        self._check("modify_node")
        self.nodes[name] = address

    def delete_node(self, name):
        self._check("delete_node")
        if name not in self.nodes:
            raise ResourceNotFound()
        del self.nodes[name]

    # Virtual servers
    def get_virtual_server(self, name):
        return self.virtuals.get(name)

    def list_virtual_servers(self):
        return [{"name": n} for n in self.virtuals]

    def create_virtual_server(self, name, pool, destination):
        self._check("create_virtual_server")
        self.virtuals[name] = {"name": name, "pool": pool, "destination": f"/Common/{destination}"}

    def modify_virtual_server_destination(self, name, destination):
        self._check("modify_virtual_server_destination")
        self.virtuals[name]["destination"] = f"/Common/{destination}"

    def delete_virtual_server(self, name):
        self._check("delete_virtual_server")
        if name not in self.virtuals:
            raise ResourceNotFound()
        del self.virtuals[name]

    def destination(self, name):
        return format_destination(self.virtuals[name]["destination"])


def _node(name, ip, ready=True):
    return Node(name=name, ready=ready, addresses=(NodeAddress("InternalIP", ip),))


def _service(*ports, name="svc", namespace="default"):
    return Service(name=name, namespace=namespace, ports=tuple(ports) or (ServicePort("", 80, 30080),))


def _group(name="web", **kwargs):
    kwargs.setdefault("bind_port", 80)
    kwargs.setdefault("target_service_name", "svc")
    kwargs.setdefault("namespace", "default")
    return ConfigGroup(name=name, **kwargs)


@pytest.fixture
def bigip():
    return FakeBigIP()


@pytest.fixture
def cluster():
    cluster = MagicMock()
    cluster.get_service.return_value = _service()
    cluster.list_nodes.return_value = [
        _node("n1", "10.0.0.11"),
        _node("n2", "10.0.0.12"),
        _node("n3", "10.0.0.13", ready=False),
    ]
    return cluster


@pytest.fixture
def table():
    return MemoryAllocationTable()


@pytest.fixture
def allocator(table):
    return VirtualIPAllocator("10.1.0.1", "10.1.0.3", table)


@pytest.fixture
def backend(bigip, cluster, allocator):
    return F5Backend(F5Config(), BackendConfig(), cluster, allocator, client=bigip)


class TestNaming:
    def test_resource_names(self, backend):
        assert backend.resource_name("web", "pool") == "web-pool"
        assert backend.resource_name("web", "monitor", "http") == "web-http-monitor"

    def test_custom_separator(self, bigip, cluster, allocator):
        backend = F5Backend(F5Config(), BackendConfig(name_separator="_"), cluster, allocator, client=bigip)
        assert backend.resource_name("web", "virtualserver", "443") == "web_443_virtualserver"

    def test_member_name(self):
        assert member_name("n1", 30080) == "n1:30080"


class TestProvision:
    def test_creates_all_resources(self, backend, bigip, allocator):
        backend.provision(_group())

        assert set(bigip.monitors) == {"web-monitor"}
        assert bigip.pools["web-pool"]["monitor"] == "web-monitor"
        assert bigip.pools["web-pool"]["members"] == {"n1:30080", "n2:30080"}
        assert bigip.nodes == {"n1": "10.0.0.11", "n2": "10.0.0.12"}
        assert bigip.virtuals["web-virtualserver"]["pool"] == "web-pool"
        assert bigip.destination("web-virtualserver") == "10.1.0.1:80"
        assert allocator.lookup("web") == "10.1.0.1"

    def test_provision_is_idempotent(self, backend, bigip, table):
        backend.provision(_group())
        bigip.calls.clear()
        backend.provision(_group())

        assert [c for c in bigip.calls if c.startswith("create")] == []
        assert bigip.pools["web-pool"]["members"] == {"n1:30080", "n2:30080"}
        assert table.read().entries == {"10.1.0.1": "web"}

    def test_configured_bind_ip_skips_allocation(self, backend, bigip, allocator):
        backend.provision(_group(bind_ip="192.168.5.5"))
        assert bigip.destination("web-virtualserver") == "192.168.5.5:80"
        assert allocator.lookup("web") is None

    def test_multi_port_service(self, backend, bigip, cluster):
        cluster.get_service.return_value = _service(
            ServicePort("http", 80, 30080), ServicePort("https", 443, 30443),
        )
        backend.provision(_group())

        assert set(bigip.pools) == {"web-http-pool", "web-https-pool"}
        assert bigip.pools["web-https-pool"]["members"] == {"n1:30443", "n2:30443"}
        assert bigip.destination("web-http-virtualserver") == "10.1.0.1:80"
        assert bigip.destination("web-https-virtualserver") == "10.1.0.1:443"

    def test_target_port_selects_one_port(self, backend, bigip, cluster):
        cluster.get_service.return_value = _service(
            ServicePort("http", 80, 30080), ServicePort("https", 443, 30443),
        )
        backend.provision(_group(bind_port=8443, target_port=443))
        assert set(bigip.virtuals) == {"web-https-virtualserver"}
        assert bigip.destination("web-https-virtualserver") == "10.1.0.1:8443"

    def test_destination_modified_when_bind_port_changes(self, backend, bigip):
        backend.provision(_group())
        bigip.calls.clear()
        backend.provision(_group(bind_port=8080))
        assert "modify_virtual_server_destination" in bigip.calls
        assert bigip.destination("web-virtualserver") == "10.1.0.1:8080"

    def test_existing_monitor_treated_as_applied(self, backend, bigip):
        bigip.monitors["web-monitor"] = {"name": "web-monitor"}
        backend.provision(_group())
        assert "create_monitor" not in bigip.calls

    def test_sync_removes_members_of_unready_nodes(self, backend, bigip, cluster):
        backend.provision(_group())
        cluster.list_nodes.return_value = [_node("n1", "10.0.0.11"), _node("n2", "10.0.0.12", ready=False)]
        backend.provision(_group())
        assert bigip.pools["web-pool"]["members"] == {"n1:30080"}

    def test_node_without_address_skipped(self, backend, bigip, cluster):
        cluster.list_nodes.return_value = [_node("n1", "10.0.0.11"), Node(name="bare", ready=True)]
        backend.provision(_group())
        assert bigip.pools["web-pool"]["members"] == {"n1:30080"}
        assert "bare" not in bigip.nodes

    def test_member_add_failure_is_not_fatal(self, backend, bigip):
        bigip.fail["add_pool_member"] = BackendAPIError("node disabled", status_code=400)
        backend.provision(_group())
        assert "web-virtualserver" in bigip.virtuals

    def test_stale_port_resources_removed(self, backend, bigip, cluster):
        cluster.get_service.return_value = _service(
            ServicePort("http", 80, 30080), ServicePort("https", 443, 30443),
        )
        backend.provision(_group())
        backend.provision(_group(target_service_id="http"))
        assert set(bigip.pools) == {"web-http-pool"}
        assert set(bigip.monitors) == {"web-http-monitor"}
        assert set(bigip.virtuals) == {"web-http-virtualserver"}

    def test_invalid_group_rejected(self, backend, bigip):
        with pytest.raises(InvalidGroupError):
            backend.provision(_group(bind_port=0))
        assert bigip.calls == []


class TestProvisionFailures:
    def test_missing_service(self, backend, bigip, cluster, allocator):
        cluster.get_service.return_value = None
        with pytest.raises(ProvisionError) as excinfo:
            backend.provision(_group())
        assert isinstance(excinfo.value.cause, ValidationError)
        assert bigip.calls == []
        assert allocator.lookup("web") is None

    def test_service_without_ports(self, backend, cluster):
        cluster.get_service.return_value = Service("svc", "default", ())
        with pytest.raises(ProvisionError, match="any port"):
            backend.provision(_group())

    def test_port_without_node_port(self, backend, cluster):
        cluster.get_service.return_value = _service(ServicePort("http", 80, 0))
        with pytest.raises(ProvisionError, match="node port"):
            backend.provision(_group())

    def test_virtual_server_failure_compensates(self, backend, bigip, allocator):
        bigip.fail["create_virtual_server"] = BackendAPIError("bad destination", status_code=400)
        with pytest.raises(ProvisionError) as excinfo:
            backend.provision(_group())

        assert excinfo.value.compensation_errors == []
        assert bigip.monitors == {}
        assert bigip.pools == {}
        assert bigip.virtuals == {}
        assert allocator.lookup("web") is None
        deletes = [c for c in bigip.calls if c.startswith("delete") and c != "delete_pool_member"]
        assert deletes == ["delete_pool", "delete_monitor"]

    def test_node_objects_outlive_rollback(self, backend, bigip):
        # Node objects are shared by every group and follow the node hooks
        bigip.fail["create_virtual_server"] = BackendAPIError("bad destination")
        with pytest.raises(ProvisionError):
            backend.provision(_group())
        assert bigip.nodes == {"n1": "10.0.0.11", "n2": "10.0.0.12"}
        assert "delete_node" not in bigip.calls

    def test_range_exhausted_compensates(self, backend, bigip, table):
        table.write({"10.1.0.1": "a", "10.1.0.2": "b", "10.1.0.3": "c"}, table.read().version)
        with pytest.raises(ProvisionError) as excinfo:
            backend.provision(_group())
        assert isinstance(excinfo.value.cause, RangeExhausted)
        assert bigip.pools == {}
        assert bigip.monitors == {}

    def test_compensation_errors_reported(self, backend, bigip):
        bigip.fail["create_virtual_server"] = BackendAPIError("bad destination")
        bigip.fail["delete_pool"] = BackendAPIError("pool busy")
        with pytest.raises(ProvisionError) as excinfo:
            backend.provision(_group())
        assert [str(e) for e in excinfo.value.compensation_errors] == ["pool busy"]
        assert bigip.monitors == {}

    def test_failed_update_keeps_previous_resources(self, backend, bigip):
        backend.provision(_group())
        bigip.fail["modify_virtual_server_destination"] = BackendAPIError("rejected")
        with pytest.raises(ProvisionError):
            backend.provision(_group(bind_port=8080))
        assert "web-pool" in bigip.pools
        assert bigip.destination("web-virtualserver") == "10.1.0.1:80"


class TestDeprovision:
    def test_removes_everything(self, backend, bigip, allocator):
        backend.provision(_group())
        backend.deprovision("web")
        assert bigip.monitors == {}
        assert bigip.pools == {}
        assert bigip.virtuals == {}
        assert allocator.lookup("web") is None
        assert backend.provisioned("web") is None

    def test_deletion_order(self, backend, bigip):
        backend.provision(_group())
        bigip.calls.clear()
        backend.deprovision("web")
        assert bigip.calls == ["delete_virtual_server", "delete_pool", "delete_monitor"]

    def test_partial_absence(self, backend, bigip):
        bigip.pools["web-pool"] = {"name": "web-pool", "monitor": "web-monitor", "members": set()}
        backend.deprovision("web")
        assert bigip.pools == {}

    def test_nothing_to_delete(self, backend, bigip):
        backend.deprovision("ghost")
        assert bigip.calls == ["delete_virtual_server", "delete_pool", "delete_monitor"]

    def test_errors_do_not_stop_remaining_deletions(self, backend, bigip, allocator):
        backend.provision(_group())
        bigip.fail["delete_pool"] = BackendAPIError("in use")
        backend.deprovision("web")
        assert bigip.virtuals == {}
        assert bigip.monitors == {}
        assert "web-pool" in bigip.pools
        assert allocator.lookup("web") is None

    def test_discovers_ports_after_restart(self, bigip, cluster, allocator, backend):
        cluster.get_service.return_value = _service(
            ServicePort("http", 80, 30080), ServicePort("https", 443, 30443),
        )
        backend.provision(_group())
        restarted = F5Backend(F5Config(), BackendConfig(), cluster, allocator, client=bigip)
        restarted.deprovision("web")
        assert bigip.pools == {}
        assert bigip.virtuals == {}

    def test_discovery_leaves_longer_group_names(self, backend, bigip, cluster):
        backend.provision(_group("web-app"))
        bigip.monitors["web-monitor"] = {"name": "web-monitor"}
        backend.deprovision("web")
        assert "web-app-pool" in bigip.pools
        assert "web-app-monitor" in bigip.monitors
        assert "web-monitor" not in bigip.monitors


class TestNodeHooks:
    def test_node_added_joins_every_pool(self, backend, bigip):
        backend.provision(_group("a"))
        backend.provision(_group("b"))
        backend.on_node_added(_node("n4", "10.0.0.14"))
        assert bigip.nodes["n4"] == "10.0.0.14"
        assert "n4:30080" in bigip.pools["a-pool"]["members"]
        assert "n4:30080" in bigip.pools["b-pool"]["members"]

    def test_node_added_not_ready_ignored(self, backend, bigip):
        backend.provision(_group())
        backend.on_node_added(_node("n4", "10.0.0.14", ready=False))
        assert "n4" not in bigip.nodes

    def test_node_without_address_skipped(self, backend, bigip):
        backend.provision(_group())
        backend.on_node_added(Node(name="bare", ready=True))
        assert "bare" not in bigip.nodes
        assert bigip.pools["web-pool"]["members"] == {"n1:30080", "n2:30080"}

    def test_node_removed(self, backend, bigip):
        backend.provision(_group())
        backend.on_node_removed(_node("n1", "10.0.0.11"))
        assert bigip.pools["web-pool"]["members"] == {"n2:30080"}
        assert "n1" not in bigip.nodes

    def test_node_removed_unknown(self, backend, bigip):
        backend.provision(_group())
        backend.on_node_removed(_node("n9", "10.0.0.19"))
        assert bigip.pools["web-pool"]["members"] == {"n1:30080", "n2:30080"}

    def test_node_becomes_unready(self, backend, bigip):
        backend.provision(_group())
        backend.on_node_updated(_node("n1", "10.0.0.11"), _node("n1", "10.0.0.11", ready=False))
        assert bigip.pools["web-pool"]["members"] == {"n2:30080"}

    def test_node_becomes_ready(self, backend, bigip):
        backend.provision(_group())
        backend.on_node_updated(_node("n3", "10.0.0.13", ready=False), _node("n3", "10.0.0.13"))
        assert "n3:30080" in bigip.pools["web-pool"]["members"]

    def test_node_address_change(self, backend, bigip):
        backend.provision(_group())
        backend.on_node_updated(_node("n1", "10.0.0.11"), _node("n1", "10.0.0.99"))
        assert bigip.nodes["n1"] == "10.0.0.99"
        assert "n1:30080" in bigip.pools["web-pool"]["members"]

    def test_node_added_during_provision_joins_new_pool(self, backend, bigip):
        create = bigip.create_virtual_server

        def create_after_node_event(name, pool, destination):
            backend.on_node_added(_node("n4", "10.0.0.14"))
            create(name, pool, destination)

        bigip.create_virtual_server = create_after_node_event
        backend.provision(_group())
        assert bigip.pools["web-pool"]["members"] == {"n1:30080", "n2:30080", "n4:30080"}

    def test_node_removed_during_provision_leaves_new_pool(self, backend, bigip):
        create = bigip.create_virtual_server

        def create_after_node_event(name, pool, destination):
            backend.on_node_removed(_node("n1", "10.0.0.11"))
            create(name, pool, destination)

        bigip.create_virtual_server = create_after_node_event
        backend.provision(_group())
        assert bigip.pools["web-pool"]["members"] == {"n2:30080"}

    def test_failed_provision_no_longer_receives_node_events(self, backend, bigip):
        bigip.fail["create_virtual_server"] = BackendAPIError("bad destination")
        with pytest.raises(ProvisionError):
            backend.provision(_group())
        bigip.calls.clear()
        backend.on_node_added(_node("n4", "10.0.0.14"))
        assert "add_pool_member" not in bigip.calls

    def test_member_error_does_not_stop_other_pools(self, backend, bigip):
        backend.provision(_group("a"))
        backend.provision(_group("b"))
        del bigip.pools["a-pool"]
        backend.on_node_added(_node("n4", "10.0.0.14"))
        assert "n4:30080" in bigip.pools["b-pool"]["members"]


class TestLifecycle:
    def test_shutdown_closes_client(self, backend, bigip):
        backend.start()
        backend.shutdown()
        assert bigip.calls[-1] == "close"
