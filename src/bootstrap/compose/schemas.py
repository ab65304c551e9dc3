"""
文件功能：
    定义部署拓扑编译相关的数据模型（Pydantic）。

公开接口：
    - ServicePreset 及各服务类别的预设：DatabasePreset、NodePreset、GatewayPreset、
      HttpsProxyPreset、WalletPreset、ExplorerPreset、FaucetPreset
    - ComposePreset: 整体部署预设
    - Addresses: 地址簿（仅用于获取水龙头私钥）
    - ComposeServiceDefinition: 编译输出的单个服务定义
    - ComposeManifest: 编译输出的清单
    - ComposeRequest: 路由层请求

预设文件使用 camelCase 键，模型同时接受 snake_case。
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

OpenPort = bool | int | str | None


class _PresetModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ServicePreset(_PresetModel):
    """各类服务共有的预设字段。"""

    name: str
    host: str | None = None
    ipv4_address: str | None = Field(default=None, alias="ipv4_address")
    open_port: OpenPort = None
    environment: dict[str, Any] | None = None
    docker_compose_debug_mode: bool | None = None
    compose: dict[str, Any] | None = None
    exclude_docker_service: bool = False


class DatabasePreset(ServicePreset):
    database_name: str | None = None


class NodePreset(ServicePreset):
    database_host: str | None = None

    broker_name: str | None = None
    broker_host: str | None = None
    broker_ipv4_address: str | None = Field(default=None, alias="brokerIpv4_address")
    broker_open_port: OpenPort = None
    broker_exclude_docker_service: bool = False
    broker_docker_compose_debug_mode: bool | None = None
    broker_compose: dict[str, Any] | None = None

    reward_program: str | None = None
    reward_program_agent_host: str | None = None
    reward_program_agent_ipv4_address: str | None = Field(default=None, alias="rewardProgramAgentIpv4_address")
    reward_program_agent_open_port: OpenPort = None
    reward_program_agent_exclude_docker_service: bool = False
    reward_program_agent_docker_compose_debug_mode: bool | None = None
    reward_program_agent_compose: dict[str, Any] | None = None
    reward_program_agent_port: int | None = None


class GatewayPreset(ServicePreset):
    database_host: str | None = None


class HttpsProxyPreset(ServicePreset):
    domains: str | None = None
    web_socket: bool | str | None = None
    stage: str | None = None
    server_names_hash_bucket_size: int | str | None = None


class WalletPreset(ServicePreset):
    pass


class ExplorerPreset(ServicePreset):
    pass


class FaucetPreset(ServicePreset):
    gateway: str | None = None


class ComposePreset(_PresetModel):
    """部署预设：各类服务集合加全局开关。"""

    docker_compose_version: str = "2.4"
    docker_compose_service_restart: str | None = "on-failure:2"
    docker_compose_debug_mode: bool = False
    subnet: str | None = None

    mongo_image: str = "mongo:4.4.3-bionic"
    mongo_compose_run_param: str = "--wiredTigerCacheSizeGB 2"
    database_name: str = "catapult"
    server_image: str = "symbolplatform/symbol-server:gcc-1.0.3.1"
    rest_image: str = "symbolplatform/symbol-rest:2.4.0"
    agent_image: str = "symbolplatform/symbol-node-rewards-agent:1.0.0"
    https_portal_image: str = "steveltn/https-portal:1.19"
    wallet_image: str = "symbolplatform/symbol-desktop-wallet:1.0.1"
    explorer_image: str = "symbolplatform/symbol-explorer:1.1.0-alpha"
    faucet_image: str = "symbolplatform/symbol-faucet:1.0.1-alpha"

    app_folder: str = "/usr/catapult"
    data_directory: str = "/symbol-workdir/data"
    reward_program_agent_port: int = 7880
    currency_mosaic_id: str | None = None

    databases: list[DatabasePreset] = Field(default_factory=list)
    nodes: list[NodePreset] = Field(default_factory=list)
    gateways: list[GatewayPreset] = Field(default_factory=list)
    https_proxies: list[HttpsProxyPreset] = Field(default_factory=list)
    wallets: list[WalletPreset] = Field(default_factory=list)
    explorers: list[ExplorerPreset] = Field(default_factory=list)
    faucets: list[FaucetPreset] = Field(default_factory=list)


class ConfigAccount(_PresetModel):
    address: str | None = None
    public_key: str | None = None
    private_key: str | None = None


class MosaicAccounts(_PresetModel):
    name: str | None = None
    id: str | None = None
    accounts: list[ConfigAccount] = Field(default_factory=list)


class Addresses(_PresetModel):
    """地址簿，仅取用 mosaics[0].accounts[0].private_key。"""

    mosaics: list[MosaicAccounts] = Field(default_factory=list)

    def main_account_private_key(self) -> str | None:
        if not self.mosaics or not self.mosaics[0].accounts:
            return None
        return self.mosaics[0].accounts[0].private_key


class ComposeServiceDefinition(BaseModel):
    """
    单个容器服务定义。字段形状固定，调用方的 compose 覆盖可以带入额外字段。
    生成的服务总带 container_name 且在清单中唯一；复用的手工清单可以省略它，networks 也可以写成列表。
    """

    model_config = ConfigDict(extra="allow")

    container_name: str | None = None
    user: str | int | None = None
    image: str | None = None
    command: str | list[str] | None = None
    entrypoint: str | list[str] | None = None
    stop_signal: str | None = None
    working_dir: str | None = None
    restart: str | None = None
    hostname: str | None = None
    ports: list[Any] = Field(default_factory=list)
    volumes: list[Any] = Field(default_factory=list)
    environment: dict[str, Any] | list[str] = Field(default_factory=dict)
    depends_on: list[str] | dict[str, Any] = Field(default_factory=list)
    networks: dict[str, Any] | list[str] | None = None
    security_opt: list[str] | None = None
    cap_add: list[str] | None = None
    privileged: bool | None = None


class ComposeManifest(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: Any = None
    services: dict[str, ComposeServiceDefinition] = Field(default_factory=dict)
    networks: dict[str, Any] | None = None

    def to_compose_dict(self) -> dict[str, Any]:
        """导出为 docker-compose 结构（未裁剪空值）。"""
        return self.model_dump(mode="json")


class ComposeRequest(_PresetModel):
    preset: ComposePreset
    addresses: Addresses | None = None
    upgrade: bool | None = None
