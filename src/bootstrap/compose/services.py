"""
部署拓扑编译服务：将部署预设编译为 docker-compose 清单。

已存在的清单（且未要求 upgrade）会被原样读取返回，避免覆盖手动调整过的清单。
同一类别内的服务并发解析，顺序不作保证；类别之间按数据库、节点、网关、HTTPS 代理、
钱包、浏览器、水龙头的顺序处理。任何配置错误都会中止编译，不会写出不完整的清单。
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from loguru import logger

from src.bootstrap.config import config
from src.bootstrap.errors import ConfigurationError
from src.bootstrap.files import delete_folder, load_yaml, prune_empty, write_yaml
from src.bootstrap.runtime.core import resolve_docker_user
from . import core
from .core import PortConfiguration, volume
from .schemas import (
    Addresses,
    ComposeManifest,
    ComposePreset,
    ComposeRequest,
    ComposeServiceDefinition,
    DatabasePreset,
    ExplorerPreset,
    FaucetPreset,
    GatewayPreset,
    HttpsProxyPreset,
    NodePreset,
    ServicePreset,
    WalletPreset,
)

COMPOSE_FILE_NAME = "docker-compose.yml"

NODES_FOLDER = "nodes"
DATABASES_FOLDER = "databases"
GATEWAYS_FOLDER = "gateways"
EXPLORERS_FOLDER = "explorers"
WALLETS_FOLDER = "wallets"

NODE_WORKING_DIRECTORY = "/symbol-workdir"
NODE_COMMANDS_DIRECTORY = "/symbol-commands"

DATABASE_PORT = 27017
NODE_PORT = 7900
BROKER_PORT = 7902
REST_PORT = 3000
HTTP_PORT = 80
HTTPS_PORT = 443
EXPLORER_PORT = 4000
FAUCET_PORT = 4000

DEBUG_FLAG = "DEBUG"
NORMAL_FLAG = "NORMAL"


class _CompileContext:
    def __init__(self, preset: ComposePreset, user: str | None, addresses: Addresses | None) -> None:
        self.preset = preset
        self.user = user
        self.addresses = addresses
        self.restart = preset.docker_compose_service_restart

    def debug(self, service_debug_mode: bool | None) -> dict:
        return core.resolve_debug_options(self.preset.docker_compose_debug_mode, service_debug_mode)


def _merge(context: _CompileContext, item: ServicePreset, base: dict) -> ComposeServiceDefinition:
    return core.merge_service(
        base,
        host=item.host,
        ipv4_address=item.ipv4_address,
        environment=item.environment,
        debug=context.debug(item.docker_compose_debug_mode),
        overrides=item.compose,
    )


async def _resolve_database(context: _CompileContext, n: DatabasePreset) -> list[ComposeServiceDefinition]:
    preset = context.preset
    return [
        _merge(context, n, {
            "user": context.user,
            "environment": {"MONGO_INITDB_DATABASE": n.database_name or preset.database_name},
            "container_name": n.name,
            "image": preset.mongo_image,
            "command": f"mongod --dbpath=/dbdata --bind_ip={n.name} {preset.mongo_compose_run_param}",
            "stop_signal": "SIGINT",
            "working_dir": "/docker-entrypoint-initdb.d",
            "ports": core.resolve_ports([PortConfiguration(DATABASE_PORT, n.open_port)]),
            "volumes": [
                volume("./mongo", "/docker-entrypoint-initdb.d", True),
                volume(f"../{DATABASES_FOLDER}/{n.name}", "/dbdata", False),
            ],
        })
    ]


async def _resolve_node(context: _CompileContext, n: NodePreset) -> list[ComposeServiceDefinition]:
    """节点服务，附带可选的 broker 与奖励计划 agent。"""
    preset = context.preset
    server_debug_mode = DEBUG_FLAG if preset.docker_compose_debug_mode or n.docker_compose_debug_mode else NORMAL_FLAG
    broker_debug_mode = (
        DEBUG_FLAG if preset.docker_compose_debug_mode or n.broker_docker_compose_debug_mode else NORMAL_FLAG
    )
    start_script = f"/bin/bash {NODE_COMMANDS_DIRECTORY}/start.sh {preset.app_folder} {preset.data_directory}"
    server_command = (
        f"{start_script} server broker {n.name} {server_debug_mode} {str(bool(n.broker_name)).lower()}"
    )
    broker_command = f"{start_script} broker server {n.broker_name or 'broker'} {broker_debug_mode}"

    server_depends_on: list[str] = []
    broker_depends_on: list[str] = []
    if n.database_host:
        server_depends_on.append(n.database_host)
        broker_depends_on.append(n.database_host)
    if n.broker_name:
        server_depends_on.append(n.broker_name)

    volumes = [
        volume(f"../{NODES_FOLDER}/{n.name}", NODE_WORKING_DIRECTORY, False),
        volume("./server", NODE_COMMANDS_DIRECTORY, True),
    ]
    node_service = _merge(context, n, {
        # 调试模式下以 root 运行
        "user": None if server_debug_mode == DEBUG_FLAG else context.user,
        "container_name": n.name,
        "image": preset.server_image,
        "command": server_command,
        "stop_signal": "SIGINT",
        "working_dir": NODE_WORKING_DIRECTORY,
        "restart": context.restart,
        "ports": core.resolve_ports([PortConfiguration(NODE_PORT, n.open_port)]),
        "volumes": volumes,
        "depends_on": server_depends_on,
    })
    services = [node_service]

    if n.broker_name and not n.broker_exclude_docker_service:
        services.append(core.merge_service(
            {
                "user": None if broker_debug_mode == DEBUG_FLAG else context.user,
                "container_name": n.broker_name,
                "image": node_service.image,
                "working_dir": node_service.working_dir,
                "command": broker_command,
                "ports": core.resolve_ports([PortConfiguration(BROKER_PORT, n.broker_open_port)]),
                "stop_signal": node_service.stop_signal,
                "restart": node_service.restart,
                "volumes": list(node_service.volumes),
                "depends_on": broker_depends_on,
            },
            host=n.broker_host,
            ipv4_address=n.broker_ipv4_address,
            debug=context.debug(n.broker_docker_compose_debug_mode),
            overrides=n.broker_compose,
        ))

    if n.reward_program and not n.reward_program_agent_exclude_docker_service:
        agent_open_port = True if n.reward_program_agent_open_port is None else n.reward_program_agent_open_port
        agent_port = n.reward_program_agent_port or preset.reward_program_agent_port
        services.append(core.merge_service(
            {
                "user": context.user,
                "container_name": f"{n.name}-agent",
                "image": preset.agent_image,
                "working_dir": NODE_WORKING_DIRECTORY,
                "entrypoint": "/app/agent-linux.bin --config agent.properties",
                "ports": core.resolve_ports([PortConfiguration(agent_port, agent_open_port)]),
                "stop_signal": "SIGINT",
                "restart": context.restart,
                "volumes": [volume(f"../{NODES_FOLDER}/{n.name}/agent", NODE_WORKING_DIRECTORY, False)],
            },
            host=n.reward_program_agent_host,
            ipv4_address=n.reward_program_agent_ipv4_address,
            debug=context.debug(n.reward_program_agent_docker_compose_debug_mode),
            overrides=n.reward_program_agent_compose,
        ))
    return services


async def _resolve_gateway(context: _CompileContext, n: GatewayPreset) -> list[ComposeServiceDefinition]:
    return [
        _merge(context, n, {
            "container_name": n.name,
            "user": context.user,
            "image": context.preset.rest_image,
            "command": f"npm start --prefix /app/catapult-rest/rest {NODE_WORKING_DIRECTORY}/rest.json",
            "stop_signal": "SIGINT",
            "working_dir": NODE_WORKING_DIRECTORY,
            "ports": core.resolve_ports([PortConfiguration(REST_PORT, n.open_port)]),
            "restart": context.restart,
            "volumes": [volume(f"../{GATEWAYS_FOLDER}/{n.name}", NODE_WORKING_DIRECTORY, False)],
            "depends_on": [n.database_host] if n.database_host else [],
        })
    ]


async def _resolve_https_proxy(context: _CompileContext, n: HttpsProxyPreset) -> list[ComposeServiceDefinition]:
    """
    HTTPS 代理：未声明 domains 时由代理的 host 与第一个网关推导。
    :raises ConfigurationError: host 或 domains 无法解析。
    """
    preset = context.preset
    host = n.host or (preset.nodes[0].host if preset.nodes else None)
    if not host:
        raise ConfigurationError(
            f"HTTPS 代理 {n.name} 无效，无法解析 'host' 属性，必须设置为有效的 DNS 记录。"
        )
    first_gateway = preset.gateways[0] if preset.gateways else None
    domains = n.domains
    if not domains and first_gateway:
        domains = core.resolve_https_proxy_domains(host, f"http://{first_gateway.name}:{REST_PORT}")
    if not domains:
        raise ConfigurationError(f"HTTPS 代理 {n.name} 无效，无法解析 'domains' 属性！")
    return [
        _merge(context, n, {
            "container_name": n.name,
            "image": preset.https_portal_image,
            "stop_signal": "SIGINT",
            "ports": core.resolve_ports([
                PortConfiguration(HTTP_PORT, True),
                PortConfiguration(HTTPS_PORT, n.open_port),
            ]),
            "environment": {
                "DOMAINS": domains,
                "WEBSOCKET": n.web_socket,
                "STAGE": n.stage,
                "SERVER_NAMES_HASH_BUCKET_SIZE": n.server_names_hash_bucket_size,
            },
            "restart": context.restart,
            "depends_on": [first_gateway.name] if first_gateway else [],
        })
    ]


async def _resolve_wallet(context: _CompileContext, n: WalletPreset) -> list[ComposeServiceDefinition]:
    return [
        _merge(context, n, {
            "container_name": n.name,
            "image": context.preset.wallet_image,
            "stop_signal": "SIGINT",
            "working_dir": NODE_WORKING_DIRECTORY,
            "ports": core.resolve_ports([PortConfiguration(HTTP_PORT, n.open_port)]),
            "restart": context.restart,
            "volumes": [volume(f"../{WALLETS_FOLDER}/{n.name}", "/usr/share/nginx/html/config", True)],
        })
    ]


async def _resolve_explorer(context: _CompileContext, n: ExplorerPreset) -> list[ComposeServiceDefinition]:
    return [
        _merge(context, n, {
            "container_name": n.name,
            "image": context.preset.explorer_image,
            "entrypoint": f'ash -c "/bin/ash {NODE_COMMANDS_DIRECTORY}/run.sh {n.name}"',
            "stop_signal": "SIGINT",
            "working_dir": NODE_WORKING_DIRECTORY,
            "ports": core.resolve_ports([PortConfiguration(EXPLORER_PORT, n.open_port)]),
            "restart": context.restart,
            "volumes": [
                volume(f"../{EXPLORERS_FOLDER}/{n.name}", NODE_WORKING_DIRECTORY, True),
                volume("./explorer", NODE_COMMANDS_DIRECTORY, True),
            ],
        })
    ]


async def _resolve_faucet(context: _CompileContext, n: FaucetPreset) -> list[ComposeServiceDefinition]:
    """水龙头：私钥未显式覆盖时取地址簿中第一个 mosaic 的第一个账户，缺失时为空字符串。"""
    environment = n.environment or {}
    main_private_key = context.addresses.main_account_private_key() if context.addresses else None
    faucet_private_key = environment.get("FAUCET_PRIVATE_KEY") or main_private_key or ""
    currency_id = environment.get("NATIVE_CURRENCY_ID") or context.preset.currency_mosaic_id or ""
    return [
        _merge(context, n, {
            "container_name": n.name,
            "image": context.preset.faucet_image,
            "stop_signal": "SIGINT",
            "environment": {
                "FAUCET_PRIVATE_KEY": faucet_private_key,
                "NATIVE_CURRENCY_ID": core.to_simple_hex(str(currency_id)),
            },
            "restart": context.restart,
            "ports": core.resolve_ports([PortConfiguration(FAUCET_PORT, n.open_port)]),
            "depends_on": [n.gateway] if n.gateway else [],
        })
    ]


async def _resolve_class(
    resolver: Callable[[_CompileContext, ServicePreset], Awaitable[list[ComposeServiceDefinition]]],
    context: _CompileContext,
    items: Sequence[ServicePreset],
) -> list[ComposeServiceDefinition]:
    """并发解析同一类别的服务，等待全部完成后汇总。"""
    results = await asyncio.gather(
        *(resolver(context, item) for item in items if not item.exclude_docker_service)
    )
    return [definition for definitions in results for definition in definitions]


class ComposeService:
    """将部署预设编译为 docker-compose 清单并写入 <target>/docker/docker-compose.yml。"""

    def __init__(self, target: str | Path, user: str | None = None, upgrade: bool = False) -> None:
        self.target = Path(target)
        self.user = user
        self.upgrade = upgrade

    @property
    def docker_folder(self) -> Path:
        return self.target / "docker"

    @property
    def compose_file(self) -> Path:
        return self.docker_folder / COMPOSE_FILE_NAME

    async def compile(self, preset: ComposePreset, addresses: Addresses | None = None) -> ComposeManifest:
        if self.upgrade:
            delete_folder(self.docker_folder)
        if self.compose_file.exists():
            logger.info(f"{self.compose_file} 已存在，直接复用（使用 upgrade 删除并重新生成）")
            return ComposeManifest.model_validate(load_yaml(self.compose_file))

        logger.info("根据预设生成 docker-compose.yml")
        context = _CompileContext(preset, resolve_docker_user(self.user), addresses)
        definitions: list[ComposeServiceDefinition] = []
        for resolver, items in (
            (_resolve_database, preset.databases),
            (_resolve_node, preset.nodes),
            (_resolve_gateway, preset.gateways),
            (_resolve_https_proxy, preset.https_proxies),
            (_resolve_wallet, preset.wallets),
            (_resolve_explorer, preset.explorers),
            (_resolve_faucet, preset.faucets),
        ):
            definitions.extend(await _resolve_class(resolver, context, items))

        manifest = ComposeManifest(
            version=preset.docker_compose_version,
            services=core.key_by_container_name(definitions),
            networks=core.default_network(preset.subnet),
        )
        data = prune_empty(manifest.to_compose_dict())
        self.docker_folder.mkdir(parents=True, exist_ok=True)
        write_yaml(self.compose_file, data)
        logger.info(f"docker-compose.yml 已生成: {self.compose_file}")
        return ComposeManifest.model_validate(data)


async def compile_compose_service(req: ComposeRequest) -> ComposeManifest:
    """
    处理编译清单的业务逻辑。
    :raises ValueError: 预设配置错误。
    """
    upgrade = config.compose_upgrade if req.upgrade is None else req.upgrade
    service = ComposeService(config.target_folder, user=config.docker_user, upgrade=upgrade)
    return await service.compile(req.preset, req.addresses)
