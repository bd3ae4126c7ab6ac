from zfs_nuke.layers import FORCE_PRIORITY, ConfigLayer
from zfs_nuke.sanitize import HOST_SPECIFIC_PATHS, sanitize


def test_sanitize_layer_shape():
    layer = sanitize()
    assert layer.is_replace
    assert layer.priority == FORCE_PRIORITY
    assert [".".join(p) for p in layer.paths()] == list(HOST_SPECIFIC_PATHS)


def test_sanitize_blanks_host_bindings(host_config):
    cleaned = host_config.extend(sanitize(host_config))

    assert cleaned.get("fileSystems") == {}
    assert cleaned.get("networking.interfaces") == {}
    assert cleaned.get("boot.initrd.luks.devices") == {}
    assert cleaned.get("networking.hostName") == "web1"


def test_sanitize_does_not_inspect_the_configuration(host_config):
    assert sanitize(host_config) == sanitize(None)


def test_sanitize_is_idempotent(host_config):
    once = host_config.extend(sanitize(host_config))
    twice = once.extend(sanitize(once))
    assert once.as_dict() == twice.as_dict()


def test_weaker_layers_cannot_reintroduce_bindings(host_config):
    cleaned = host_config.extend(sanitize(host_config))
    again = cleaned.extend(
        ConfigLayer.of({"networking.interfaces.eth0.useDHCP": True, "fileSystems": {"/": {"device": "/dev/sda1"}}})
    )
    assert again.get("networking.interfaces") == {}
    assert again.get("fileSystems") == {}
