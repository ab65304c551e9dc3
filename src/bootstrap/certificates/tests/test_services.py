"""
针对证书生命周期服务公开接口的测试：使用模拟 openssl 输出的运行器，不依赖 docker。
"""

import asyncio
import os
import shutil
from pathlib import Path

import pytest
import yaml
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_der_private_key,
)

from src.bootstrap.certificates import core
from src.bootstrap.certificates.schemas import CertificateConfigPreset, CertificatePair, NodeCertificates
from src.bootstrap.certificates.services import CertificateService
from src.bootstrap.errors import ConfigurationError, KeyConsistencyError, ToolchainError
from src.bootstrap.runtime.schemas import RunImageRequest, RunResult


def _key_pair() -> CertificatePair:
    key = Ed25519PrivateKey.generate()
    private_hex = key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()).hex()
    public_hex = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()
    return CertificatePair(private_key=private_hex, public_key=public_hex)


def _colon_block(hex_key: str) -> str:
    octets = [hex_key[i:i + 2].lower() for i in range(0, len(hex_key), 2)]
    lines = [":".join(octets[i:i + 15]) for i in range(0, len(octets), 15)]
    return ":\n".join("    " + line for line in lines)


def _pkey_text_from_der(path: Path) -> str:
    key = load_der_private_key(path.read_bytes(), password=None)
    private_hex = key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()).hex()
    public_hex = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()
    return (
        "ED25519 Private-Key:\n"
        f"priv:\n{_colon_block(private_hex)}\n"
        f"pub:\n{_colon_block(public_hex)}\n"
    )


class FakeOpenSslRunner:
    """模拟镜像中的 openssl：按真实 DER 私钥输出密钥块，并像脚本一样清理临时文件。"""

    def __init__(self, expiration_stdout: str = "", tamper: bool = False, created: bool = True):
        self.expiration_stdout = expiration_stdout
        self.tamper = tamper
        self.created = created
        self.requests: list[RunImageRequest] = []

    async def run(self, request: RunImageRequest) -> RunResult:
        self.requests.append(request)
        folder = Path(request.binds[0].rsplit(":", 2)[0])
        if request.cmds[0] == "openssl":
            return RunResult(stdout=self.expiration_stdout, returncode=0)

        assert request.cmds == ["bash", core.SCRIPT_FILE_NAME]
        assert not request.ignore_errors
        ca_text = _pkey_text_from_der(folder / "ca.der")
        node_der = folder / "ca.der" if self.tamper else folder / "node.der"
        node_text = _pkey_text_from_der(node_der)
        stdout = ca_text + "Certificate:\n    Data:\n" + node_text + "Certificate Request:\n    Data:\n"
        if not self.created:
            return RunResult(stdout=stdout, stderr="openssl failure")

        (folder / core.CA_CERTIFICATE_FILE_NAME).write_text("CA CERT", encoding="utf-8")
        (folder / core.NODE_CERTIFICATE_FILE_NAME).write_text("NODE CERT", encoding="utf-8")
        (folder / "node.full.crt.pem").write_text("NODE CERT\nCA CERT", encoding="utf-8")
        (folder / "node.key.pem").write_text("NODE KEY", encoding="utf-8")
        for name in (core.SCRIPT_FILE_NAME, "ca.der", "node.der", "serial.dat"):
            (folder / name).unlink()
        shutil.rmtree(folder / "new_certs")
        return RunResult(stdout=stdout + "Certificate Created\n")


WILL_NOT_EXPIRE = "notAfter=Oct 18 10:00:00 2027 GMT\nCertificate will not expire\n"
WILL_EXPIRE = "notAfter=Oct 30 10:00:00 2026 GMT\nCertificate will expire\n"


@pytest.fixture
def preset() -> CertificateConfigPreset:
    return CertificateConfigPreset(server_image="symbolplatform/symbol-server:latest")


@pytest.fixture
def node_keys() -> NodeCertificates:
    return NodeCertificates(main=_key_pair(), transport=_key_pair())


def _snapshot(folder: Path) -> dict:
    return {p.name: (p.stat().st_mtime_ns, p.read_bytes()) for p in folder.iterdir() if p.is_file()}


def test_creates_certificate_when_metadata_missing(tmp_path, preset, node_keys):
    runner = FakeOpenSslRunner()
    service = CertificateService(tmp_path, user="none", runner=runner)

    created = asyncio.run(service.ensure_certificate(preset, "peer-node", node_keys, False))

    assert created is True
    folder = tmp_path / "nodes" / "peer-node" / "cert"
    assert (folder / core.NODE_CERTIFICATE_FILE_NAME).exists()
    assert (folder / core.CA_CERTIFICATE_FILE_NAME).exists()
    assert not (folder / "ca.der").exists()
    assert not (folder / core.SCRIPT_FILE_NAME).exists()

    metadata = yaml.safe_load((folder / "metadata.yml").read_text(encoding="utf-8"))
    assert metadata == {
        "version": 1,
        "mainPublicKey": node_keys.main.public_key,
        "transportPublicKey": node_keys.transport.public_key,
    }

    request = runner.requests[0]
    assert request.image == preset.server_image
    assert request.workdir == "/data"
    assert request.user_id is None
    assert request.binds == [f"{folder.resolve()}:/data:rw"]


def test_serial_and_configs_written_before_run(tmp_path, preset, node_keys):
    seen = {}

    class InspectingRunner(FakeOpenSslRunner):
        async def run(self, request):
            folder = Path(request.binds[0].rsplit(":", 2)[0])
            seen["serial"] = (folder / "serial.dat").read_text(encoding="utf-8")
            seen["ca_cnf"] = (folder / "ca.cnf").read_text(encoding="utf-8")
            seen["new_certs"] = (folder / "new_certs").is_dir()
            return await super().run(request)

    service = CertificateService(tmp_path, runner=InspectingRunner())
    asyncio.run(service.ensure_certificate(preset, "peer-node", node_keys, False, random_serial="ABC123"))

    assert seen["serial"] == "abc123\n"
    assert "CN = peer-node-account" in seen["ca_cnf"]
    assert seen["new_certs"] is True


def test_no_renewal_when_not_expiring(tmp_path, preset, node_keys):
    asyncio.run(CertificateService(tmp_path, runner=FakeOpenSslRunner()).ensure_certificate(
        preset, "peer-node", node_keys, False
    ))
    folder = tmp_path / "nodes" / "peer-node" / "cert"
    before = _snapshot(folder)

    runner = FakeOpenSslRunner(expiration_stdout=WILL_NOT_EXPIRE)
    created = asyncio.run(CertificateService(tmp_path, runner=runner).ensure_certificate(
        preset, "peer-node", node_keys, True
    ))

    assert created is False
    assert _snapshot(folder) == before
    assert len(runner.requests) == 1
    assert runner.requests[0].ignore_errors is True
    assert runner.requests[0].cmds[-1] == str(preset.certificate_expiration_warning_in_days * 86400)


def test_expiring_without_renewal_returns_false(tmp_path, preset, node_keys):
    asyncio.run(CertificateService(tmp_path, runner=FakeOpenSslRunner()).ensure_certificate(
        preset, "peer-node", node_keys, False
    ))
    folder = tmp_path / "nodes" / "peer-node" / "cert"
    before = _snapshot(folder)

    runner = FakeOpenSslRunner(expiration_stdout=WILL_EXPIRE)
    created = asyncio.run(CertificateService(tmp_path, runner=runner).ensure_certificate(
        preset, "peer-node", node_keys, False
    ))

    assert created is False
    assert _snapshot(folder) == before


def test_expiring_with_renewal_recreates_folder(tmp_path, preset, node_keys):
    asyncio.run(CertificateService(tmp_path, runner=FakeOpenSslRunner()).ensure_certificate(
        preset, "peer-node", node_keys, False
    ))
    folder = tmp_path / "nodes" / "peer-node" / "cert"
    stale = folder / "stale.txt"
    stale.write_text("old", encoding="utf-8")

    runner = FakeOpenSslRunner(expiration_stdout=WILL_EXPIRE)
    created = asyncio.run(CertificateService(tmp_path, runner=runner).ensure_certificate(
        preset, "peer-node", node_keys, True
    ))

    assert created is True
    assert not stale.exists()
    assert (folder / core.NODE_CERTIFICATE_FILE_NAME).exists()
    assert (folder / "metadata.yml").exists()
    assert [r.cmds[0] for r in runner.requests] == ["openssl", "bash"]


def test_regenerates_when_keys_change(tmp_path, preset, node_keys):
    service = CertificateService(tmp_path, runner=FakeOpenSslRunner())
    asyncio.run(service.ensure_certificate(preset, "peer-node", node_keys, False))

    rotated = NodeCertificates(main=node_keys.main, transport=_key_pair())
    runner = FakeOpenSslRunner(expiration_stdout=WILL_NOT_EXPIRE)
    created = asyncio.run(CertificateService(tmp_path, runner=runner).ensure_certificate(
        preset, "peer-node", rotated, False
    ))

    assert created is True
    assert [r.cmds[0] for r in runner.requests] == ["bash"]
    metadata = yaml.safe_load((tmp_path / "nodes" / "peer-node" / "cert" / "metadata.yml").read_text())
    assert metadata["transportPublicKey"] == rotated.transport.public_key


def test_custom_cert_folder(tmp_path, preset, node_keys):
    custom = tmp_path / "custom-cert"
    service = CertificateService(tmp_path, runner=FakeOpenSslRunner())
    assert asyncio.run(service.ensure_certificate(preset, "peer-node", node_keys, False, str(custom))) is True
    assert (custom / "metadata.yml").exists()
    assert not (tmp_path / "nodes").exists()


def test_cert_folder_outside_target_rejected(tmp_path, preset, node_keys):
    target = tmp_path / "target"
    outside = tmp_path / "home"
    outside.mkdir()
    (outside / "keep.txt").write_text("data", encoding="utf-8")
    runner = FakeOpenSslRunner()
    service = CertificateService(target, runner=runner)

    for folder in (str(outside), "../home", "nodes/../../home"):
        with pytest.raises(ConfigurationError, match="不在"):
            asyncio.run(service.ensure_certificate(preset, "peer-node", node_keys, False, folder))

    assert (outside / "keep.txt").exists()
    assert runner.requests == []


def test_relative_cert_folder_resolved_against_target(tmp_path, node_keys):
    service = CertificateService(tmp_path)
    assert service.resolve_cert_folder("custom/cert", "peer-node") == tmp_path / "custom" / "cert"
    assert service.resolve_cert_folder(None, "peer-node") == tmp_path / "nodes" / "peer-node" / "cert"


def test_missing_success_marker_is_fatal(tmp_path, preset, node_keys):
    service = CertificateService(tmp_path, runner=FakeOpenSslRunner(created=False))
    with pytest.raises(ToolchainError, match="证书生成失败") as ei:
        asyncio.run(service.ensure_certificate(preset, "peer-node", node_keys, False))
    assert ei.value.stderr == "openssl failure"
    assert not (tmp_path / "nodes" / "peer-node" / "cert" / "metadata.yml").exists()


def test_key_mismatch_is_fatal(tmp_path, preset, node_keys):
    service = CertificateService(tmp_path, runner=FakeOpenSslRunner(tamper=True))
    with pytest.raises(KeyConsistencyError, match="节点私钥不一致"):
        asyncio.run(service.ensure_certificate(preset, "peer-node", node_keys, False))
    assert not (tmp_path / "nodes" / "peer-node" / "cert" / "metadata.yml").exists()


def test_public_key_mismatch_is_fatal(tmp_path, preset, node_keys):
    wrong = NodeCertificates(
        main=CertificatePair(private_key=node_keys.main.private_key, public_key=_key_pair().public_key),
        transport=node_keys.transport,
    )
    service = CertificateService(tmp_path, runner=FakeOpenSslRunner())
    with pytest.raises(KeyConsistencyError, match="CA 公钥不一致"):
        asyncio.run(service.ensure_certificate(preset, "peer-node", wrong, False))


def test_wrong_block_count_is_fatal(tmp_path, preset, node_keys):
    class SingleBlockRunner(FakeOpenSslRunner):
        async def run(self, request):
            folder = Path(request.binds[0].rsplit(":", 2)[0])
            text = _pkey_text_from_der(folder / "ca.der")
            return RunResult(stdout=text + "Certificate:\nCertificate Created\n")

    service = CertificateService(tmp_path, runner=SingleBlockRunner())
    with pytest.raises(ToolchainError, match="应生成 2 个证书"):
        asyncio.run(service.ensure_certificate(preset, "peer-node", node_keys, False))


def test_missing_private_key_is_configuration_error(tmp_path, preset, node_keys):
    provided = NodeCertificates(
        main=CertificatePair(public_key=node_keys.main.public_key),
        transport=node_keys.transport,
    )
    runner = FakeOpenSslRunner()
    service = CertificateService(tmp_path, runner=runner)
    with pytest.raises(ConfigurationError):
        asyncio.run(service.ensure_certificate(preset, "peer-node", provided, False))
    assert runner.requests == []


def test_custom_key_resolver(tmp_path, preset, node_keys):
    calls = []

    def resolver(pair, key_name, node_name, operation):
        calls.append((key_name, node_name))
        secret = node_keys.main if key_name == "main" else node_keys.transport
        return secret.private_key

    provided = NodeCertificates(
        main=CertificatePair(public_key=node_keys.main.public_key),
        transport=CertificatePair(public_key=node_keys.transport.public_key),
    )
    service = CertificateService(tmp_path, runner=FakeOpenSslRunner(), key_resolver=resolver)
    assert asyncio.run(service.ensure_certificate(preset, "peer-node", provided, False)) is True
    assert calls == [("main", "peer-node"), ("transport", "peer-node")]


@pytest.mark.skipif(not hasattr(os, "getuid"), reason="需要 POSIX uid")
def test_current_user_is_resolved(tmp_path, preset, node_keys):
    runner = FakeOpenSslRunner()
    service = CertificateService(tmp_path, user="current", runner=runner)
    asyncio.run(service.ensure_certificate(preset, "peer-node", node_keys, False))
    assert runner.requests[0].user_id == f"{os.getuid()}:{os.getgid()}"


def test_get_certificates_delegates_to_parser(node_keys):
    assert CertificateService.get_certificates("no keys here") == []
