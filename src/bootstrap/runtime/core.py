"""
外部工具运行器：在隔离容器中执行命令并捕获输出。
公开接口：
- secure_string: 屏蔽输出中的密钥
- resolve_docker_user: 将配置中的用户参数解析为 --user 的值
- build_docker_command: 组装 docker run 命令行
- ToolRunner: 异步执行命令的运行器
"""

from __future__ import annotations

import asyncio
import os
import re

from loguru import logger

from src.bootstrap.errors import ToolExecutionError
from .schemas import RunImageRequest, RunResult

CURRENT_USER = "current"

_KEY_PATTERN = re.compile(r"[0-9a-fA-F]{64}")


def secure_string(text: str) -> str:
    """将文本中所有 64 位十六进制串替换为 HIDDEN_KEY，避免私钥进入日志。"""
    return _KEY_PATTERN.sub("HIDDEN_KEY", text)


def resolve_docker_user(param: str | None) -> str | None:
    """
    解析容器用户参数。
    :param param: "current" 表示当前进程的 uid:gid，"none" 或空表示不指定。
    :return: 传给 --user 的值，或 None。
    """
    if not param or param.strip().lower() == "none":
        return None
    if param.strip().lower() == CURRENT_USER:
        # Windows 上没有 getuid
        if not hasattr(os, "getuid"):
            return None
        return f"{os.getuid()}:{os.getgid()}"
    return param.strip()


def build_docker_command(binary: str, request: RunImageRequest) -> list[str]:
    cmd = [binary, "run", "--rm"]
    if request.user_id:
        cmd.extend(["--user", request.user_id])
    cmd.extend(["--workdir", request.workdir])
    for bind in request.binds:
        cmd.extend(["-v", bind])
    cmd.append(request.image)
    cmd.extend(c for c in request.cmds if c)
    return cmd


class ToolRunner:
    """通过 docker 在镜像中执行命令，不设超时，等待进程结束。"""

    def __init__(self, binary: str = "docker") -> None:
        self.binary = binary

    async def run(self, request: RunImageRequest) -> RunResult:
        cmd = build_docker_command(self.binary, request)
        logger.debug(f"Executing command: {' '.join(cmd)}")

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out, err = await proc.communicate()
        result = RunResult(
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
            returncode=proc.returncode if proc.returncode is not None else 0,
        )
        if result.returncode != 0 and not request.ignore_errors:
            error_msg = f"镜像 {request.image} 中的命令执行失败 (exit {result.returncode}): {secure_string(result.stderr)}"
            logger.error(error_msg)
            raise ToolExecutionError(error_msg, result.returncode, result.stdout, result.stderr)
        return result
