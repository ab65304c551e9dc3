"""
证书生命周期管理的业务逻辑层。

ensure_certificate 每次调用只有四种结局：
1. 元数据缺失/损坏/不一致 -> 重新生成，返回 True
2. 证书未临近过期 -> 不做任何修改，返回 False
3. 证书临近过期且不允许续期 -> 输出警告，返回 False
4. 证书临近过期且允许续期 -> 重新生成，返回 True
任何工具输出或密钥校验错误都会中止整个调用，不做自动重试。
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from loguru import logger

from src.bootstrap.config import config
from src.bootstrap.errors import ConfigurationError, KeyConsistencyError, ToolchainError
from src.bootstrap.files import recreate_folder, write_text_file, write_yaml
from src.bootstrap.runtime.core import ToolRunner, resolve_docker_user, secure_string
from src.bootstrap.runtime.schemas import RunImageRequest, RunResult
from . import core
from .schemas import (
    CertificateConfigPreset,
    CertificatePair,
    EnsureCertificateRequest,
    EnsureCertificateResponse,
    ExpirationCheckRequest,
    ExpirationReport,
    NodeCertificates,
)

KeyResolver = Callable[[CertificatePair, str, str, str], str]

MAIN_KEY_NAME = "main"
TRANSPORT_KEY_NAME = "transport"


def _validate_is_true(condition: bool, message: str) -> None:
    if not condition:
        raise KeyConsistencyError(message)


class CertificateService:
    """为单个节点生成、续期并校验 CA 与节点证书。"""

    def __init__(
        self,
        target: str | Path,
        user: str | None = None,
        runner: ToolRunner | None = None,
        key_resolver: KeyResolver = core.resolve_private_key,
    ) -> None:
        self.target = Path(target)
        self.user = user
        self.runner = runner or ToolRunner()
        self.key_resolver = key_resolver

    def default_cert_folder(self, name: str) -> Path:
        return self.target / "nodes" / name / "cert"

    def resolve_cert_folder(self, cert_folder: str | Path | None, name: str) -> Path:
        """
        解析证书目录：相对路径基于 target，结果必须位于 target 之内。
        :raises ConfigurationError: 目录越出 target。
        """
        if not cert_folder:
            return self.default_cert_folder(name)
        folder = self.target / cert_folder
        if not folder.resolve().is_relative_to(self.target.resolve()):
            raise ConfigurationError(f"证书目录 {cert_folder} 不在 {self.target} 之内")
        return folder

    async def ensure_certificate(
        self,
        preset: CertificateConfigPreset,
        name: str,
        provided: NodeCertificates,
        renew_if_required: bool,
        cert_folder: str | Path | None = None,
        random_serial: str | None = None,
    ) -> bool:
        """
        确保节点证书存在且未临近过期。
        :return: 是否生成了新证书。
        """
        folder = self.resolve_cert_folder(cert_folder, name)
        metadata_file = folder / core.METADATA_FILE_NAME
        cert_name = core.NODE_CERTIFICATE_FILE_NAME
        warning_days = preset.certificate_expiration_warning_in_days

        if core.should_generate_certificate(metadata_file, provided):
            await self._create_certificate(preset, folder, name, provided, metadata_file, random_serial)
            return True

        report = await self.will_certificate_expire(preset.server_image, folder, cert_name, warning_days)
        if not report.will_expire:
            logger.info(
                f"节点 {name} 的 {cert_name} 证书将于 {report.expiration_date} 过期，暂不需要续期。"
            )
            return False
        if not renew_if_required:
            logger.warning(
                f"节点 {name} 的 {cert_name} 证书将在 {warning_days} 天内（{report.expiration_date}）过期，需要续期。"
            )
            return False
        logger.info(
            f"节点 {name} 的 {cert_name} 证书将在 {warning_days} 天内（{report.expiration_date}）过期，正在续期..."
        )
        await self._create_certificate(preset, folder, name, provided, metadata_file, random_serial)
        return True

    async def will_certificate_expire(
        self,
        server_image: str,
        cert_folder: str | Path,
        certificate_file_name: str,
        warning_in_days: int,
    ) -> ExpirationReport:
        """对已有证书执行只读的过期检查。"""
        result = await self._run_openssl(
            server_image,
            core.expiration_command(certificate_file_name, warning_in_days),
            Path(cert_folder),
            ignore_errors=True,
        )
        return core.parse_expiration(result.stdout, result.stderr, certificate_file_name)

    @staticmethod
    def get_certificates(stdout: str) -> list[CertificatePair]:
        return core.parse_certificates(stdout)

    async def _create_certificate(
        self,
        preset: CertificateConfigPreset,
        folder: Path,
        name: str,
        provided: NodeCertificates,
        metadata_file: Path,
        random_serial: str | None,
    ) -> None:
        main_private_key = self.key_resolver(
            provided.main, MAIN_KEY_NAME, name, "生成 CA 证书"
        )
        transport_private_key = self.key_resolver(
            provided.transport, TRANSPORT_KEY_NAME, name, "生成节点证书"
        )

        recreate_folder(folder)
        (folder / "new_certs").mkdir()
        write_text_file(folder / "ca.cnf", core.create_ca_config(name))
        write_text_file(folder / "node.cnf", core.create_node_config(name))
        core.create_der_file(main_private_key, folder / "ca.der")
        core.create_der_file(transport_private_key, folder / "node.der")
        write_text_file(folder / "serial.dat", core.random_serial(random_serial))
        write_text_file(
            folder / core.SCRIPT_FILE_NAME,
            core.create_cert_commands(
                preset.ca_certificate_expiration_in_days,
                preset.node_certificate_expiration_in_days,
            ),
        )

        result = await self._run_openssl(
            preset.server_image, ["bash", core.SCRIPT_FILE_NAME], folder, ignore_errors=False
        )
        if core.CERTIFICATE_CREATED_MARKER not in result.stdout:
            logger.info(secure_string(result.stdout))
            logger.error(secure_string(result.stderr))
            raise ToolchainError("证书生成失败，请检查日志！", result.stdout, result.stderr)

        certificates = core.parse_certificates(result.stdout)
        if len(certificates) != 2:
            raise ToolchainError(
                f"证书生成失败，应生成 2 个证书，实际得到: {len(certificates)}",
                result.stdout,
                result.stderr,
            )
        logger.info(f"节点 {name} 的证书已生成")
        ca_certificate, node_certificate = certificates

        _validate_is_true(ca_certificate.private_key == main_private_key, "CA 私钥不一致")
        _validate_is_true(ca_certificate.public_key == provided.main.public_key, "CA 公钥不一致")
        _validate_is_true(node_certificate.private_key == transport_private_key, "节点私钥不一致")
        _validate_is_true(node_certificate.public_key == provided.transport.public_key, "节点公钥不一致")

        write_yaml(metadata_file, core.build_metadata(provided).model_dump(by_alias=True))

    async def _run_openssl(
        self, image: str, cmds: list[str], folder: Path, ignore_errors: bool
    ) -> RunResult:
        request = RunImageRequest(
            image=image,
            user_id=resolve_docker_user(self.user),
            workdir="/data",
            cmds=cmds,
            binds=[f"{folder.resolve()}:/data:rw"],
            ignore_errors=ignore_errors,
        )
        return await self.runner.run(request)


def _build_service() -> CertificateService:
    return CertificateService(
        target=config.target_folder,
        user=config.docker_user,
        runner=ToolRunner(config.docker_binary),
    )


async def ensure_certificate_service(req: EnsureCertificateRequest) -> EnsureCertificateResponse:
    """
    处理确保证书的业务逻辑。
    :raises ValueError: 配置错误（如私钥缺失）。
    :raises RuntimeError: 工具执行失败、输出不符合约定或密钥不一致。
    """
    created = await _build_service().ensure_certificate(
        req.preset,
        req.name,
        req.certificates,
        req.renew_if_required,
        req.cert_folder,
        req.random_serial,
    )
    return EnsureCertificateResponse(name=req.name, created=created)


async def check_expiration_service(req: ExpirationCheckRequest) -> ExpirationReport:
    service = _build_service()
    return await service.will_certificate_expire(
        req.server_image,
        service.resolve_cert_folder(req.cert_folder, ""),
        req.certificate_file_name,
        req.warning_in_days,
    )
