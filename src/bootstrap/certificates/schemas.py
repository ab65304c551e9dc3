"""
节点证书生命周期管理的数据模型定义。
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """同时接受 snake_case 与 camelCase 字段名（预设文件使用 camelCase）。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CertificatePair(_CamelModel):
    """
    一对私钥/公钥（64 位十六进制）。
    调用方提供的证书对可以不带私钥，由密钥解析器补全。
    """
    private_key: str | None = None
    public_key: str

    @field_validator("private_key", "public_key")
    @classmethod
    def normalize_hex(cls, value: str | None) -> str | None:
        """统一为去空白的大写十六进制。"""
        if value is None:
            return None
        return value.strip().upper()


class NodeCertificates(_CamelModel):
    """节点需要出示的身份密钥（main）与传输密钥（transport）。"""
    main: CertificatePair
    transport: CertificatePair


class CertificateMetadata(_CamelModel):
    """持久化在证书目录中的生成元数据，用于判断是否需要重新生成。"""
    version: int
    main_public_key: str
    transport_public_key: str


class ExpirationReport(_CamelModel):
    will_expire: bool
    expiration_date: str


class CertificateConfigPreset(_CamelModel):
    server_image: str = Field(description="包含 openssl 的节点镜像")
    ca_certificate_expiration_in_days: int = 7300
    node_certificate_expiration_in_days: int = 375
    certificate_expiration_warning_in_days: int = 30


class EnsureCertificateRequest(_CamelModel):
    """请求确保某个节点的证书存在且未过期。"""
    preset: CertificateConfigPreset
    name: str
    certificates: NodeCertificates
    renew_if_required: bool = False
    cert_folder: str | None = None
    random_serial: str | None = None


class EnsureCertificateResponse(_CamelModel):
    name: str
    created: bool = Field(description="是否生成了新证书")


class ExpirationCheckRequest(_CamelModel):
    server_image: str
    cert_folder: str
    certificate_file_name: str = "node.crt.pem"
    warning_in_days: int = 30
