from csi_operator.config import OperatorConfig, load_config


def test_defaults(monkeypatch):
    for key in (
        "CSI_KUBELET_ROOT_DIR",
        "CSI_REGISTRY_DOMAIN",
        "CSI_FILESYSTEMS",
        "CSI_NEED_DEFAULT_SC",
        "CEPH_MONITORS",
        "CEPH_ADMIN_ID",
    ):
        monkeypatch.delenv(key, raising=False)

    config = load_config()

    assert config == OperatorConfig()
    assert config.kubelet_root_dir == "/var/lib/kubelet"
    assert config.registry_domain == "ccr.ccs.tencentyun.com/tke3/library"
    assert config.filesystem_list == ["xfs", "ext4"]
    assert config.need_default_sc is True
    assert config.ceph.admin_id == "admin"


def test_environment(monkeypatch):
    monkeypatch.setenv("CSI_KUBELET_ROOT_DIR", "/data/kubelet")
    monkeypatch.setenv("CSI_FILESYSTEMS", "ext4, xfs ,")
    monkeypatch.setenv("CSI_NEED_DEFAULT_SC", "false")
    monkeypatch.setenv("CEPH_MONITORS", "10.0.0.1:6789")

    config = load_config()

    assert config.kubelet_root_dir == "/data/kubelet"
    assert config.filesystem_list == ["ext4", "xfs"]
    assert config.need_default_sc is False
    assert config.ceph.monitors == "10.0.0.1:6789"


def test_arguments_win_over_environment(monkeypatch):
    monkeypatch.setenv("CSI_REGISTRY_DOMAIN", "env.example.com")
    monkeypatch.setenv("CSI_NEED_DEFAULT_SC", "false")

    config = load_config(registry_domain="cli.example.com", need_default_sc=True)

    assert config.registry_domain == "cli.example.com"
    assert config.need_default_sc is True
