"""
部署拓扑编译的核心逻辑：端口、卷、调试叠加、网络叠加与服务定义的合并顺序。

服务定义的合并顺序（后者覆盖前者，按字段浅合并）：
1. 各服务类别的基础定义
2. 网络叠加（host -> 网络别名与 hostname，ipv4_address -> 静态地址）
3. 预设中的 environment（作为默认值，基础定义中的同名变量优先）
4. 调试叠加
5. 调用方的 compose 原始覆盖
"""

from __future__ import annotations

from typing import Any, Iterable, NamedTuple

from src.bootstrap.errors import ConfigurationError
from .schemas import ComposeServiceDefinition, OpenPort


class PortConfiguration(NamedTuple):
    internal_port: int
    open_port: OpenPort


def _is_open(open_port: OpenPort) -> bool:
    if isinstance(open_port, str):
        return open_port.strip() != "" and open_port.strip().lower() != "false"
    return bool(open_port)


def resolve_ports(configurations: Iterable[PortConfiguration]) -> list[str]:
    """
    仅保留开放的端口；open_port 为 True 或 "true" 时宿主端口与容器端口相同，
    否则宿主端口取 open_port 的值。
    """
    ports = []
    for internal_port, open_port in configurations:
        if not _is_open(open_port):
            continue
        if open_port is True or (isinstance(open_port, str) and open_port.strip().lower() == "true"):
            ports.append(f"{internal_port}:{internal_port}")
        else:
            ports.append(f"{open_port}:{internal_port}")
    return ports


def volume(host_folder: str, image_folder: str, read_only: bool) -> str:
    return f"{host_folder}:{image_folder}:{'ro' if read_only else 'rw'}"


def resolve_debug_options(compose_debug_mode: bool, service_debug_mode: bool | None) -> dict[str, Any]:
    """
    调试叠加：服务级显式 False 总是优先；否则任一开关为 True 时放宽容器限制。
    每次调用返回新的字典。
    """
    if service_debug_mode is False:
        return {}
    if service_debug_mode or compose_debug_mode:
        return {
            "security_opt": ["seccomp:unconfined"],
            "cap_add": ["ALL"],
            "privileged": True,
        }
    return {}


def network_overlay(host: str | None, ipv4_address: str | None) -> dict[str, Any]:
    if not host and not ipv4_address:
        return {}
    default_network: dict[str, Any] = {}
    overlay: dict[str, Any] = {"networks": {"default": default_network}}
    if host:
        overlay["hostname"] = host
        default_network["aliases"] = [host]
    if ipv4_address:
        default_network["ipv4_address"] = ipv4_address
    return overlay


def merge_service(
    base: dict[str, Any],
    *,
    host: str | None = None,
    ipv4_address: str | None = None,
    environment: dict[str, Any] | None = None,
    debug: dict[str, Any] | None = None,
    overrides: dict[str, Any] | None = None,
) -> ComposeServiceDefinition:
    """按模块文档中的固定顺序合并出最终服务定义。"""
    service = dict(base)
    service.update(network_overlay(host, ipv4_address))
    if environment:
        service["environment"] = {**environment, **(base.get("environment") or {})}
    service.update(debug or {})
    service.update(overrides or {})
    return ComposeServiceDefinition.model_validate(service)


def resolve_https_proxy_domains(from_domain: str, to_domain: str) -> str:
    return f"{from_domain} -> {to_domain}"


def to_simple_hex(text: str) -> str:
    """去掉 0x 前缀与单引号（如 0x6BED'913F'A202'23F8 -> 6BED913FA20223F8）。"""
    return text.replace("0x", "").replace("'", "")


def key_by_container_name(definitions: Iterable[ComposeServiceDefinition]) -> dict[str, ComposeServiceDefinition]:
    """
    以 container_name 为键构建服务表。
    :raises ConfigurationError: 不同服务使用了相同的容器名。
    """
    services: dict[str, ComposeServiceDefinition] = {}
    for definition in definitions:
        name = definition.container_name
        if name in services:
            raise ConfigurationError(f"容器名 {name} 重复，多个服务不能使用同一个名称")
        services[name] = definition
    return services


def default_network(subnet: str | None) -> dict[str, Any] | None:
    if not subnet:
        return None
    return {"default": {"ipam": {"config": [{"subnet": subnet}]}}}
