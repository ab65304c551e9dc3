"""
部署工具的错误类型。

- ConfigurationError: 预设配置无法解析（路由层映射为 400）
- ToolchainError: 外部 PKI 工具输出不符合约定
- KeyConsistencyError: 工具输出的密钥与提供/解析出的密钥不一致
- ToolExecutionError: 外部工具以非零状态码退出
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """预设配置错误，无法生成服务定义或证书。"""


class ToolchainError(RuntimeError):
    """外部工具输出不符合约定。"""

    def __init__(self, message: str, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class KeyConsistencyError(RuntimeError):
    """解析出的密钥与预期密钥不一致，绝不能降级为警告。"""


class ToolExecutionError(RuntimeError):
    """外部工具执行失败。"""

    def __init__(self, message: str, returncode: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
