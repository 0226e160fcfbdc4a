"""
Unit tests for tunnel graph models and profile validation
"""

import pytest
from pydantic import ValidationError

from hopchain.models.ssh_tunnel import HostCredential, SSHAuthMethod
from hopchain.models.tunnel_graph import NodeKind, TunnelEdge, ValidationResult
from hopchain.services.graph_validator import is_valid_host, reachable_from, validate_profile

from conftest import local, node, profile, ssh_host, target_host


# ============================================================================
# Model Tests
# ============================================================================

class TestModels:
    """Tests for the graph and credential models"""

    def test_node_kind_capabilities(self):
        assert NodeKind.SSH_HOST.is_ssh_capable
        assert NodeKind.TARGET_HOST.is_ssh_capable
        assert not NodeKind.LOCAL_MACHINE.is_ssh_capable
        assert NodeKind.DYNAMIC_PROXY.is_forward
        assert not NodeKind.SSH_HOST.is_forward

    def test_profile_is_frozen(self, e2e_profile):
        with pytest.raises(ValidationError):
            e2e_profile.name = "changed"

    def test_neighbours_follow_both_directions(self, e2e_profile):
        ids = {n.id for n in e2e_profile.neighbours("bastion-a")}
        assert ids == {"local", "bastion-b"}

    def test_validation_result_is_valid(self):
        result = ValidationResult()
        result.add_warning("just a warning")
        assert result.is_valid
        result.add_error("broken")
        assert not result.is_valid

    def test_credential_defaults(self):
        credential = HostCredential(hostname=" example.com ")
        assert credential.hostname == "example.com"
        assert credential.port == 22
        assert credential.auth_method == SSHAuthMethod.SSH_AGENT

    @pytest.mark.parametrize("port", [0, -1, 65536])
    def test_credential_rejects_bad_port(self, port):
        with pytest.raises(ValidationError):
            HostCredential(hostname="example.com", port=port)

    def test_credential_masks_secret(self):
        credential = HostCredential(
            hostname="example.com",
            auth_method=SSHAuthMethod.PASSWORD,
            secret="hunter2",
        )
        masked = credential.get_masked_config()
        assert masked["secret"] == "***masked***"
        assert "hunter2" not in repr(credential)


# ============================================================================
# Host Format Tests
# ============================================================================

class TestIsValidHost:
    """Tests for hostname/IP literal checks"""

    @pytest.mark.parametrize("value", [
        "localhost",
        "db.internal.example.com",
        "10.0.0.1",
        "::1",
        "[fe80::1]",
        "a-b.c",
    ])
    def test_accepts(self, value):
        assert is_valid_host(value)

    @pytest.mark.parametrize("value", [
        "",
        "   ",
        "-leading.example.com",
        "trailing-.example.com",
        "has space.com",
        "semi;colon",
        "a" * 64 + ".com",
    ])
    def test_rejects(self, value):
        assert not is_valid_host(value)


# ============================================================================
# validate_profile Tests
# ============================================================================

class TestValidateProfile:
    """Tests for structural profile validation"""

    def test_valid_chain(self, e2e_profile):
        result = validate_profile(e2e_profile)
        assert result.is_valid
        assert result.errors == []

    def test_missing_local_machine(self):
        result = validate_profile(profile([ssh_host("a")]))
        assert not result.is_valid
        assert any("LocalMachine" in e for e in result.errors)

    def test_multiple_local_machines(self):
        result = validate_profile(profile(
            [local("l1"), local("l2"), ssh_host("a")],
            ("l1", "a"),
        ))
        assert any("only have one LocalMachine" in e for e in result.errors)

    def test_duplicate_node_ids(self):
        result = validate_profile(profile(
            [local(), ssh_host("a"), ssh_host("a")],
            ("local", "a"),
        ))
        assert any("Duplicate node id" in e for e in result.errors)

    def test_ssh_host_requires_host_ref(self):
        result = validate_profile(profile(
            [local(), node("a", NodeKind.SSH_HOST)],
            ("local", "a"),
        ))
        assert any("must have a host reference" in e for e in result.errors)

    def test_local_forward_requires_ports(self):
        result = validate_profile(profile(
            [local(), ssh_host("a"), node("fwd", NodeKind.LOCAL_PORT_FORWARD, remote_host="db")],
            ("local", "a"),
            ("a", "fwd"),
        ))
        assert any("must have a local_port" in e for e in result.errors)
        assert any("must have a remote_port" in e for e in result.errors)

    def test_remote_forward_requires_both_ports(self):
        result = validate_profile(profile(
            [local(), ssh_host("a"), node("fwd", NodeKind.REMOTE_PORT_FORWARD, remote_port=9000)],
            ("local", "a"),
            ("a", "fwd"),
        ))
        assert any("must have a local_port" in e for e in result.errors)

    def test_dynamic_proxy_requires_local_port(self):
        result = validate_profile(profile(
            [local(), ssh_host("a"), node("socks", NodeKind.DYNAMIC_PROXY)],
            ("local", "a"),
            ("a", "socks"),
        ))
        assert any("SOCKS proxy" in e for e in result.errors)

    @pytest.mark.parametrize("port", [0, 65536])
    def test_port_out_of_range(self, port):
        result = validate_profile(profile(
            [local(), ssh_host("a"), node("socks", NodeKind.DYNAMIC_PROXY, local_port=port)],
            ("local", "a"),
            ("a", "socks"),
        ))
        assert any("invalid local_port" in e for e in result.errors)

    def test_invalid_remote_host_and_bind_address(self):
        result = validate_profile(profile(
            [
                local(),
                ssh_host("a"),
                node(
                    "fwd",
                    NodeKind.LOCAL_PORT_FORWARD,
                    local_port=8080,
                    remote_port=80,
                    remote_host="bad host",
                    bind_address="not;valid",
                ),
            ],
            ("local", "a"),
            ("a", "fwd"),
        ))
        assert any("invalid remote_host" in e for e in result.errors)
        assert any("invalid bind_address" in e for e in result.errors)

    def test_forward_without_remote_host_warns(self):
        result = validate_profile(profile(
            [local(), ssh_host("a"), node("fwd", NodeKind.LOCAL_PORT_FORWARD, local_port=8080, remote_port=80)],
            ("local", "a"),
            ("a", "fwd"),
        ))
        assert result.is_valid
        assert any("defaults to loopback" in w for w in result.warnings)

    def test_forward_next_to_target_host_does_not_warn(self):
        result = validate_profile(profile(
            [
                local(),
                ssh_host("a"),
                node("fwd", NodeKind.LOCAL_PORT_FORWARD, local_port=8080, remote_port=80),
                target_host("db", remote_host="db.internal"),
            ],
            ("local", "a"),
            ("a", "fwd"),
            ("fwd", "db"),
        ))
        assert not any("defaults to loopback" in w for w in result.warnings)

    def test_unknown_edge_endpoints(self):
        p = profile([local(), ssh_host("a")], ("local", "a"))
        p = p.model_copy(update={"edges": p.edges + [TunnelEdge(source_node_id="a", target_node_id="ghost")]})
        result = validate_profile(p)
        assert any("non-existent target node" in e for e in result.errors)

    def test_self_edge(self):
        result = validate_profile(profile([local(), ssh_host("a")], ("local", "a"), ("a", "a")))
        assert any("to itself" in e for e in result.errors)

    def test_no_reachable_ssh_host(self):
        result = validate_profile(profile([local(), ssh_host("a")]))
        assert any("No SSH host is reachable" in e for e in result.errors)
        assert any("not reachable" in w for w in result.warnings)

    def test_cycle_is_a_warning(self):
        result = validate_profile(profile(
            [local(), ssh_host("a"), ssh_host("b")],
            ("local", "a"),
            ("a", "b"),
            ("b", "a"),
        ))
        assert result.is_valid
        assert any("cycle" in w for w in result.warnings)

    def test_collects_all_errors(self):
        result = validate_profile(profile(
            [node("a", NodeKind.SSH_HOST), node("socks", NodeKind.DYNAMIC_PROXY)],
        ))
        assert len(result.errors) >= 3

    def test_reachable_from(self, e2e_profile):
        assert reachable_from(e2e_profile, "bastion-b") == {"bastion-b", "target"}
