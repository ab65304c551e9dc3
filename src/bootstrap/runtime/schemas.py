"""
外部工具运行器的数据模型定义。
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class RunImageRequest(BaseModel):
    """在容器镜像中执行命令的请求。"""

    image: str = Field(description="镜像名称")
    user_id: str | None = Field(default=None, description="容器内运行用户，None 表示镜像默认用户")
    workdir: str = Field(description="容器内工作目录")
    cmds: list[str] = Field(description="命令及参数")
    binds: list[str] = Field(default_factory=list, description="挂载，格式 hostPath:containerPath:mode")
    ignore_errors: bool = Field(default=False, description="非零退出码时是否仍返回输出")


class RunResult(BaseModel):
    """命令执行结果。"""

    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
