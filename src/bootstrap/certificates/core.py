"""
证书生命周期管理的核心逻辑实现。
包括元数据判断、openssl 脚本生成、私钥 DER 编码、工具输出解析等纯函数。

外部 PKI 工具的输出格式不受本系统控制，解析逻辑集中在 parse_certificates / parse_expiration 中，
以便脱离生命周期状态机单独测试。
"""

from __future__ import annotations

import re
import secrets
from pathlib import Path

import yaml
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    NoEncryption,
)
from loguru import logger

from src.bootstrap.errors import ConfigurationError, ToolchainError
from src.bootstrap.files import load_yaml
from src.bootstrap.runtime.core import secure_string
from .schemas import CertificateMetadata, CertificatePair, ExpirationReport, NodeCertificates

NODE_CERTIFICATE_FILE_NAME = "node.crt.pem"
CA_CERTIFICATE_FILE_NAME = "ca.cert.pem"
METADATA_FILE_NAME = "metadata.yml"
SCRIPT_FILE_NAME = "createNodeCertificates.sh"
METADATA_VERSION = 1

CERTIFICATE_CREATED_MARKER = "Certificate Created"
WILL_EXPIRE_MARKER = "Certificate will expire"
WILL_NOT_EXPIRE_MARKER = "Certificate will not expire"

# openssl pkey -text 输出的密钥块标记
_PRIVATE_MARKER = "priv:"
_PUBLIC_MARKER = "pub:"
_BOUNDARY_MARKER = "Certificate"
KEY_HEX_LENGTH = 64

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")
_NOT_AFTER = re.compile(r"notAfter=(.*)\n")


def should_generate_certificate(metadata_file: Path, provided: NodeCertificates) -> bool:
    """
    判断是否需要重新生成证书。
    :param metadata_file: 证书目录中的 metadata.yml。
    :param provided: 调用方提供的节点密钥。
    :return: 元数据缺失、损坏、版本不一致或任一公钥不一致时返回 True。
    """
    if not metadata_file.exists():
        return True
    try:
        metadata = CertificateMetadata.model_validate(load_yaml(metadata_file))
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.warning(f"无法从 {metadata_file} 加载节点证书元数据，将重新生成。错误: {e}")
        return True
    return (
        metadata.main_public_key != provided.main.public_key
        or metadata.transport_public_key != provided.transport.public_key
        or metadata.version != METADATA_VERSION
    )


def build_metadata(provided: NodeCertificates) -> CertificateMetadata:
    return CertificateMetadata(
        version=METADATA_VERSION,
        main_public_key=provided.main.public_key,
        transport_public_key=provided.transport.public_key,
    )


def _extract_key(subtext: str) -> str:
    key = "".join(part.strip() for part in subtext.strip().split(":"))
    if len(key) != KEY_HEX_LENGTH or not _HEX_KEY.match(key):
        raise ToolchainError(f"无法从 openssl 脚本输出中加载证书密钥。输出: \n{subtext}")
    return key.upper()


def parse_certificates(stdout: str) -> list[CertificatePair]:
    """
    从 openssl 输出中解析私钥/公钥对。

    语法：每个密钥块为 `priv:` <冒号分隔字节> `pub:` <冒号分隔字节>，之后紧跟 `Certificate` 边界标记。
    结果顺序与出现顺序一致（0 为 CA，1 为节点）。

    :raises ToolchainError: 任一密钥去掉冒号后不是 64 位十六进制。
    """
    pairs: list[CertificatePair] = []
    index = stdout.find(_PRIVATE_MARKER)
    while index >= 0:
        middle = stdout.find(_PUBLIC_MARKER, index)
        boundary = stdout.find(_BOUNDARY_MARKER, index)
        if middle < 0 or boundary < middle:
            raise ToolchainError(f"openssl 输出中的密钥块不完整。输出: \n{stdout[index:]}")
        private_key = _extract_key(stdout[index + len(_PRIVATE_MARKER):middle])
        public_key = _extract_key(stdout[middle + len(_PUBLIC_MARKER):boundary])
        pairs.append(CertificatePair(private_key=private_key, public_key=public_key))
        index = stdout.find(_PRIVATE_MARKER, index + 1)
    return pairs


def parse_expiration(stdout: str, stderr: str, certificate_file_name: str) -> ExpirationReport:
    """
    解析 `openssl x509 -enddate -checkend` 的输出。
    :raises ToolchainError: 无法解析过期时间或缺少过期状态标记。
    """
    match = _NOT_AFTER.search(stdout)
    expiration_date = match.group(1) if match else None
    if not expiration_date:
        logger.info(secure_string(stdout))
        logger.error(secure_string(stderr))
        raise ToolchainError(
            f"无法校验 {certificate_file_name} 证书有效期，过期时间无法解析，请检查日志！",
            stdout,
            stderr,
        )
    if WILL_EXPIRE_MARKER in stdout:
        return ExpirationReport(will_expire=True, expiration_date=expiration_date)
    if WILL_NOT_EXPIRE_MARKER in stdout:
        return ExpirationReport(will_expire=False, expiration_date=expiration_date)
    logger.info(secure_string(stdout))
    logger.error(secure_string(stderr))
    raise ToolchainError(f"无法校验 {certificate_file_name} 证书有效期，请检查日志！", stdout, stderr)


def expiration_command(certificate_file_name: str, warning_in_days: int) -> list[str]:
    seconds = warning_in_days * 24 * 60 * 60
    return [
        "openssl", "x509", "-enddate", "-noout",
        "-in", certificate_file_name,
        "-checkend", str(seconds),
    ]


def create_cert_commands(ca_expiration_in_days: int, node_expiration_in_days: int) -> str:
    """生成完整的 openssl 证书脚本，成功后清理临时文件并输出成功标记。"""
    return f"""set -ex

chmod 700 new_certs
touch index.txt.attr
touch index.txt

# create CA key
cat ca.der | openssl pkey -inform DER -outform PEM -out ca.key.pem
openssl pkey -inform pem -in ca.key.pem -text -noout
openssl pkey -in ca.key.pem -pubout -out ca.pubkey.pem

# create CA cert and self-sign it
openssl req -config ca.cnf -keyform PEM -key ca.key.pem -new -x509 -days {ca_expiration_in_days} -out {CA_CERTIFICATE_FILE_NAME}
openssl x509 -in {CA_CERTIFICATE_FILE_NAME}  -text -noout

# create node key
cat node.der | openssl pkey -inform DER -outform PEM -out node.key.pem
openssl pkey -inform pem -in node.key.pem -text -noout

# create request
openssl req -config node.cnf -key node.key.pem -new -out node.csr.pem
openssl req  -text -noout -verify -in node.csr.pem

# CA side: sign node cert
openssl ca -batch -config ca.cnf -days {node_expiration_in_days} -notext -in node.csr.pem -out {NODE_CERTIFICATE_FILE_NAME}
openssl verify -CAfile {CA_CERTIFICATE_FILE_NAME} {NODE_CERTIFICATE_FILE_NAME}

# finally create full crt
cat {NODE_CERTIFICATE_FILE_NAME} {CA_CERTIFICATE_FILE_NAME} > node.full.crt.pem

rm {SCRIPT_FILE_NAME}
rm ca.key.pem
rm ca.der
rm node.der
rm index.txt*
rm serial.dat*
rm -rf new_certs

echo "{CERTIFICATE_CREATED_MARKER}"
"""


def create_ca_config(name: str) -> str:
    """CA 侧 openssl 配置（自签与签发节点证书共用）。"""
    return f"""[ca]
default_ca = CA_default

[CA_default]
new_certs_dir = ./new_certs
database = index.txt
serial = serial.dat
private_key = ca.key.pem
certificate = {CA_CERTIFICATE_FILE_NAME}
default_md = default
unique_subject = no
policy = policy_catapult

[policy_catapult]
commonName = supplied

[req]
prompt = no
distinguished_name = dn
x509_extensions = x509_v3

[dn]
CN = {name}-account

[x509_v3]
basicConstraints = critical,CA:TRUE
subjectKeyIdentifier = hash
authorityKeyIdentifier = keyid:always,issuer
"""


def create_node_config(name: str) -> str:
    return f"""[req]
prompt = no
distinguished_name = dn

[dn]
CN = {name}
"""


def create_der_file(private_key: str, path: Path) -> None:
    """将 64 位十六进制 Ed25519 私钥写为 PKCS#8 DER 文件。"""
    try:
        key = Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_key))
    except ValueError as e:
        raise ConfigurationError(f"无效的私钥格式: {e}") from e
    path.write_bytes(
        key.private_bytes(
            encoding=Encoding.DER,
            format=PrivateFormat.PKCS8,
            encryption_algorithm=NoEncryption(),
        )
    )


def random_serial(provided: str | None = None) -> str:
    """返回 serial.dat 内容：调用方提供的序列号或 19 个随机字节，小写十六进制并以换行结尾。"""
    serial = (provided or "").strip() or secrets.token_hex(19)
    return serial.lower() + "\n"


def resolve_private_key(pair: CertificatePair, key_name: str, node_name: str, operation: str) -> str:
    """
    默认的私钥解析器：直接使用调用方提供的私钥。
    :raises ConfigurationError: 未提供私钥。
    """
    if not pair.private_key:
        raise ConfigurationError(f"节点 {node_name} 的 {key_name} 私钥未提供，无法{operation}")
    return pair.private_key.strip().upper()
