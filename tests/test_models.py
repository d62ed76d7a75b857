"""Tests for vmbuilder.models module."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmbuilder.exceptions import ValidationError
from vmbuilder.models import (
    VM,
    LifecycleState,
    OSImage,
    VMConfig,
    decode_annotation,
    encode_annotation,
    parse_create_request,
    round_memory,
    vmx_path_for,
)

IMAGE = {
    "url": "https://images.example.com/osx-10.10.tar.gz",
    "checksum": "ABCDEF0123",
    "checksum_type": "SHA256",
}


class TestOSImage:
    def test_normalizes_checksum_and_type(self):
        image = OSImage.from_dict(IMAGE)
        assert image.checksum == "abcdef0123"
        assert image.checksum_type == "sha256"
        assert image.password is None

    def test_to_dict_has_exact_keys(self):
        image = OSImage.from_dict(dict(IMAGE, password="s3cret"))
        assert set(image.to_dict()) == {"url", "checksum", "checksum_type", "password"}

    @pytest.mark.parametrize(
        "override",
        [
            {"url": ""},
            {"checksum": None},
            {"checksum": "not-hex!"},
            {"checksum_type": "crc32"},
            {"password": 5},
        ],
    )
    def test_rejects_invalid_fields(self, override):
        with pytest.raises(ValidationError):
            OSImage.from_dict(dict(IMAGE, **override))

    def test_rejects_non_object(self):
        with pytest.raises(ValidationError, match="JSON object"):
            OSImage.from_dict(["not", "a", "dict"])


class TestParseCreateRequest:
    def test_defaults(self):
        req = parse_create_request({"image": IMAGE})
        assert req.cpus == 0
        assert req.memory == 0
        assert req.network_type == "nat"
        assert req.launch_gui is False
        assert req.tools_init_timeout is None
        assert req.callback_url == ""

    def test_full_request(self):
        req = parse_create_request(
            {
                "image": IMAGE,
                "cpus": 4,
                "memory": 2048,
                "network_type": "Bridged",
                "launch_gui": True,
                "tools_init_timeout": 90,
                "bootstrap_script": "echo hi",
                "callback_url": "http://ci.example.com/hook",
            }
        )
        assert req.network_type == "bridged"
        assert req.bootstrap_script == "echo hi"
        cfg = req.to_config("abc")
        assert cfg.id == "abc"
        assert cfg.cpus == 4
        assert cfg.tools_init_timeout == 90

    @pytest.mark.parametrize(
        "override",
        [
            {"cpus": "2"},
            {"memory": True},
            {"network_type": "custom"},
            {"launch_gui": "yes"},
            {"tools_init_timeout": 0},
            {"callback_url": "ftp://example.com"},
        ],
    )
    def test_rejects_invalid_fields(self, override):
        with pytest.raises(ValidationError):
            parse_create_request(dict({"image": IMAGE}, **override))

    def test_requires_object_body(self):
        with pytest.raises(ValidationError):
            parse_create_request([])


class TestRoundMemory:
    @pytest.mark.parametrize("value, expected", [(512, 512), (513, 516), (515, 516), (516, 516), (1023, 1024)])
    def test_rounds_up_to_four_megabytes(self, value, expected):
        assert round_memory(value) == expected


class TestAnnotation:
    def test_round_trip(self):
        image = OSImage("https://example.com/a.zip", "abc123", "md5", password="pw")
        annotation = encode_annotation(image)
        assert '"' not in annotation
        assert decode_annotation(annotation) == image

    def test_empty_annotation_decodes_to_none(self):
        assert decode_annotation("") is None
        assert decode_annotation(encode_annotation(None)) is None

    def test_garbage_raises_validation_error(self):
        with pytest.raises(ValidationError):
            decode_annotation("this is not base64!")


class TestVM:
    def test_vmx_path_is_derived_from_id(self):
        assert vmx_path_for(Path("/data/vms"), "abc") == Path("/data/vms/abc/abc.vmx")

    @pytest.mark.parametrize(
        "state, status",
        [
            (LifecycleState.NEW, "unknown"),
            (LifecycleState.CREATING, "creating"),
            (LifecycleState.RUNNING, "running"),
            (LifecycleState.STOPPED, "stopped"),
            (LifecycleState.ERROR, "error"),
            (LifecycleState.DESTROYED, "unknown"),
        ],
    )
    def test_status_strings(self, state, status):
        vm = VM(config=VMConfig(id="abc"), vmx_path=Path("/x/abc/abc.vmx"), state=state)
        assert vm.status == status

    def test_to_dict(self):
        image = OSImage("https://example.com/a.zip", "abc123", "md5")
        vm = VM(config=VMConfig(id="abc", image=image, cpus=2, memory=516), vmx_path=Path("/x"))
        data = vm.to_dict()
        assert data["id"] == "abc"
        assert data["image"]["checksum"] == "abc123"
        assert data["memory"] == 516
        assert data["ip_address"] == ""
        assert data["status"] == "unknown"
